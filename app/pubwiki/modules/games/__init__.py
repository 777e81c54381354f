"""
Games catalog module (admin-only writes).

Games are auditable; wiki modules read them through GameCatalog.
"""
