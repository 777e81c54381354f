"""
Wiki module.

- Pages are versioned: every edit appends an immutable, numbered revision.
- Edits use optimistic concurrency (expected revision number, no locks).
- Page bodies embed content modules ([module Name ...]) resolved at render time
  against the startup registry; a failing module only breaks its own fragment.
"""
