"""Workflow template records describing deployed process definitions."""
from __future__ import annotations

from typing import List

from claimflow import db
from claimflow.utils.helpers import isoformat


class WorkflowTemplate(db.Model):
    __tablename__ = "workflow_templates"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text, nullable=True)
    process_key = db.Column(db.String(100), nullable=False, index=True)
    type = db.Column(db.String(50), nullable=True)
    status = db.Column(db.String(20), nullable=False, default="draft")
    deployment_id = db.Column(db.String(64), nullable=True)
    template_version = db.Column(db.Integer, nullable=False, default=1)
    is_deployed = db.Column(db.Boolean, nullable=False, default=False)
    deployed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, server_default=db.func.now(), nullable=False)

    @classmethod
    def deployed_active(cls) -> List["WorkflowTemplate"]:
        return cls.query.filter_by(is_deployed=True, status="active").order_by(cls.id.asc()).all()

    @classmethod
    def count_all(cls) -> int:
        return cls.query.count()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "process_key": self.process_key,
            "type": self.type,
            "status": self.status,
            "is_deployed": self.is_deployed,
            "deployed_at": isoformat(self.deployed_at),
        }

    def __repr__(self) -> str:
        return f"<WorkflowTemplate {self.name} key={self.process_key}>"
