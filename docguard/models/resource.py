"""
Resource model — navigation entries, page routes and API endpoints.

Each row is optionally gated by a single ``required_capability`` name.
``NULL`` means unrestricted.  API rows carry their HTTP verb in
``metadata_json["method"]``.
"""

from datetime import datetime, timezone

from docguard.models import db

RESOURCE_TYPES = {"navigation", "route", "api"}


class Resource(db.Model):
    __tablename__ = "resources"

    id = db.Column(db.Integer, primary_key=True)
    type = db.Column(db.String(20), nullable=False)  # navigation | route | api
    path = db.Column(db.String(300), nullable=False)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text)
    icon = db.Column(db.String(100))
    parent_id = db.Column(
        db.Integer, db.ForeignKey("resources.id", ondelete="SET NULL"), nullable=True
    )
    required_capability = db.Column(db.String(100), nullable=True)
    sort_order = db.Column(db.Integer, default=0)
    is_active = db.Column(db.Boolean, default=True)
    metadata_json = db.Column("metadata", db.JSON, default=dict)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.Index("ix_resources_type_path", "type", "path"),
    )

    parent = db.relationship("Resource", remote_side=[id], backref="children")

    @property
    def method(self) -> str | None:
        meta = self.metadata_json or {}
        method = meta.get("method")
        return method.upper() if method else None

    def to_dict(self):
        return {
            "id": self.id,
            "type": self.type,
            "path": self.path,
            "name": self.name,
            "description": self.description,
            "icon": self.icon,
            "parent_id": self.parent_id,
            "required_capability": self.required_capability,
            "sort_order": self.sort_order,
            "is_active": self.is_active,
            "metadata": self.metadata_json or {},
        }
