from shiki.core.lifecycle import create_fuda, delete_fuda
from shiki.core.model import FudaStatus
from shiki.core.prd.prd_files import list_prd_ids, prd_path
from shiki.core.report.report import orphans, prd_breakdown, status_breakdown, summarize_status
from shiki.core.status.state_machine import transition


def test_orphan_reference_then_soft_delete(store):
    c = create_fuda(store, title="C", prd_id="2025-01-01_x").id
    assert orphans(store, set()) == [("2025-01-01_x", 1)]

    delete_fuda(store, c)
    assert orphans(store, set()) == []


def test_known_prd_is_not_an_orphan(store):
    create_fuda(store, title="a", prd_id="2025-01-01_x")
    create_fuda(store, title="b", prd_id="2025-01-01_x")
    create_fuda(store, title="c", prd_id="2025-03-03_z")
    assert orphans(store, {"2025-01-01_x"}) == [("2025-03-03_z", 1)]
    assert orphans(store, set()) == [("2025-01-01_x", 2), ("2025-03-03_z", 1)]


def test_breakdown_sums_to_live_count(store):
    ids = [create_fuda(store, title=f"t{i}").id for i in range(5)]
    transition(store, ids[0], FudaStatus.DONE)
    transition(store, ids[1], FudaStatus.IN_PROGRESS)
    transition(store, ids[2], FudaStatus.FAILED)
    delete_fuda(store, ids[3])

    counts = status_breakdown(store)
    assert counts.total == 4
    assert counts.get(FudaStatus.BLOCKED) == 1
    assert counts.get(FudaStatus.DONE) == 1
    assert counts.get(FudaStatus.READY) == 0
    assert counts.to_dict()["total"] == 4
    assert set(counts.counts) == set(FudaStatus)


def test_breakdown_by_prd(store):
    create_fuda(store, title="a", prd_id="p1")
    create_fuda(store, title="b", prd_id="p2")
    create_fuda(store, title="c")

    assert status_breakdown(store, "p1").total == 1
    grouped = prd_breakdown(store)
    assert list(grouped) == ["p1", "p2", None]
    assert sum(c.total for c in grouped.values()) == 3


def test_summarize_status(store):
    create_fuda(store, title="a")
    line = summarize_status(status_breakdown(store))
    assert line.startswith("OK: 1 fuda (blocked=1, ready=0")


def test_prd_ids_from_markdown_files(tmp_path):
    prds = tmp_path / "prds"
    assert list_prd_ids(prds) == set()
    prds.mkdir()
    (prds / "2025-01-01_x.md").write_text("# X\n", encoding="utf-8")
    (prds / "notes.txt").write_text("", encoding="utf-8")
    (prds / "drafts").mkdir()
    assert list_prd_ids(prds) == {"2025-01-01_x"}
    assert prd_path(prds, "2025-01-01_x").exists()
