"""Storage adapter for fuda, dependency edges and audit history.

The store owns the sqlite schema and the transaction primitive. Engine
modules receive a `Store` handle explicitly; nothing here is global.
"""
