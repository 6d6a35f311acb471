import re

import pytest

from shiki.core import ids
from shiki.core.errors import IdExhausted
from shiki.core.lifecycle import create_fuda


def test_generate_id_shape():
    for length in (4, 5, 6):
        fid = ids.generate_id(length)
        assert re.fullmatch(rf"sk-[0-9a-z]{{{length}}}", fid)


def test_candidate_ids_grow_after_attempts():
    lengths = [len(c) - len(ids.ID_PREFIX) for c in ids.candidate_ids(2)]
    assert lengths == [4, 4, 5, 5, 6, 6]


def test_normalize_prefix():
    assert ids.normalize_prefix("AB1") == "sk-ab1"
    assert ids.normalize_prefix("sk-ab") == "sk-ab"


def test_insert_retries_on_collision(store, monkeypatch):
    first = create_fuda(store, title="first")
    picks = iter([first.id, first.id, "sk-zzzz"])
    monkeypatch.setattr(ids, "generate_id", lambda length=4: next(picks))

    second = create_fuda(store, title="second")
    assert second.id == "sk-zzzz"


def test_insert_exhausts_id_space(store, monkeypatch):
    first = create_fuda(store, title="first")
    monkeypatch.setattr(ids, "generate_id", lambda length=4: first.id)

    with pytest.raises(IdExhausted) as exc:
        create_fuda(store, title="second")
    assert exc.value.code == "E_ID_EXHAUSTED"
    assert len(store.list_fuda()) == 1
