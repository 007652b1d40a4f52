"""
Record versioning module.

Cultures and grows are stored as append-only version chains:
- store.py: insert/read primitives (no updates, no deletes)
- service.py: the amendment engine (create, amend, restore, merge, archive)
- history.py: read side (version lists, amendment log, current projection)
"""
