# backend/memberauth/db/base.py

# Importing every model here registers it on Base.metadata, which is what
# create_all() and the test fixtures build the schema from.
from memberauth.db.base_class import Base  # noqa: F401
from memberauth.db.models.account import Account  # noqa: F401
from memberauth.db.models.audit_log import AuditLog  # noqa: F401
