from __future__ import annotations

from ..extensions import db
from storekeeper.time_utils import to_utc_z, utcnow
from .columns import new_uuid


SYNC_PENDING = "PENDING"
SYNC_PROCESSING = "PROCESSING"
SYNC_COMPLETED = "COMPLETED"
SYNC_FAILED = "FAILED"
SYNC_STATUSES = (SYNC_PENDING, SYNC_PROCESSING, SYNC_COMPLETED, SYNC_FAILED)

SYNC_ACTIONS = ("CREATE", "UPDATE", "DELETE")


class SyncQueueItem(db.Model):
    """
    Server-side record of one offline mutation pushed by a device.

    State machine:
        PENDING -> PROCESSING -> COMPLETED | FAILED
        FAILED -> PENDING   (explicit retry only, while attempts < max_attempts)
        PROCESSING -> FAILED (lease expired, worker presumed dead)

    attempts counts processing attempts and is incremented by the same
    conditional UPDATE that claims the item for processing.
    """
    __tablename__ = "sync_queue"
    __table_args__ = (
        db.UniqueConstraint(
            "user_id", "table_name", "record_id", "action", "client_timestamp",
            name="uq_sync_queue_item_identity",
        ),
        db.Index("ix_sync_queue_user_status", "user_id", "status"),
    )

    id = db.Column(db.String(36), primary_key=True, default=new_uuid)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    store_id = db.Column(db.Integer, db.ForeignKey("stores.id"), nullable=True)
    client_item_id = db.Column(db.String(64), nullable=True)

    action = db.Column(db.String(16), nullable=False)
    table_name = db.Column(db.String(64), nullable=False)
    record_id = db.Column(db.String(64), nullable=False)
    data = db.Column(db.JSON, nullable=False, default=dict)
    client_timestamp = db.Column(db.DateTime(timezone=True), nullable=False)

    status = db.Column(db.String(16), nullable=False, default=SYNC_PENDING)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    max_attempts = db.Column(db.Integer, nullable=False, default=3)
    error = db.Column(db.Text, nullable=True)
    result = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def is_stuck(self) -> bool:
        return self.status == SYNC_FAILED and self.attempts >= self.max_attempts

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "store_id": self.store_id,
            "client_item_id": self.client_item_id,
            "action": self.action,
            "table_name": self.table_name,
            "record_id": self.record_id,
            "timestamp": to_utc_z(self.client_timestamp, precise=True),
            "status": self.status,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "error": self.error,
            "is_stuck": self.is_stuck,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
