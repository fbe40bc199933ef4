"""
ORM Model for the key/value state store.

One row per namespaced key (`incident:<id>`, `approval:<id>`, `learning:<id>`).
Expiry is stored as epoch seconds so SQLite and Postgres compare it the same way.
"""
from sqlalchemy import Column, String, Float, JSON

from selfheal.app.core.database import Base


class StateRecordORM(Base):
    __tablename__ = "state_records"

    key = Column(String(300), primary_key=True)
    namespace = Column(String(50), nullable=False, index=True)
    payload = Column(JSON, nullable=False)

    # NULL means no expiry
    expires_at = Column(Float, nullable=True, index=True)
    updated_at = Column(Float, nullable=False)
