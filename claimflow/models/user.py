"""Organizational user records."""
from __future__ import annotations

import enum
from typing import List, Optional

from claimflow import db


class UserRole(enum.Enum):
    ADMIN = "ADMIN"
    MANAGER = "MANAGER"
    EMPLOYEE = "EMPLOYEE"


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    employee_id = db.Column(db.String(20), unique=True, nullable=True)
    name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=False, index=True)
    department = db.Column(db.String(100), nullable=True, index=True)
    title = db.Column(db.String(50), nullable=True, index=True)
    role = db.Column(db.Enum(UserRole, name="user_role"), nullable=False, default=UserRole.EMPLOYEE)
    manager_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    external_id = db.Column(db.String(64), unique=True, nullable=True)
    last_login_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, server_default=db.func.now(), nullable=False)
    updated_at = db.Column(db.DateTime, nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    manager = db.relationship("User", remote_side=[id], lazy="joined")

    __mapper_args__ = {"version_id_col": version_id}

    @classmethod
    def get(cls, user_id: int) -> Optional["User"]:
        return db.session.get(cls, user_id)

    @classmethod
    def find_by_email(cls, email: str, active_only: bool = False) -> Optional["User"]:
        query = cls.query.filter_by(email=email)
        if active_only:
            query = query.filter_by(is_active=True)
        return query.first()

    @classmethod
    def find_by_external_id(cls, external_id: str) -> Optional["User"]:
        return cls.query.filter_by(external_id=external_id).first()

    @classmethod
    def active(cls):
        """Query over employed users in stable id order."""
        return cls.query.filter_by(is_active=True).order_by(cls.id.asc())

    @classmethod
    def find_active_by_department_and_role(cls, department: str, role: UserRole) -> List["User"]:
        return cls.active().filter(cls.department == department, cls.role == role).all()

    @classmethod
    def find_active_by_department_and_title(cls, department: str, title: str) -> List["User"]:
        return cls.active().filter(cls.department == department, cls.title == title).all()

    @classmethod
    def find_active_by_title(cls, title: str) -> List["User"]:
        return cls.active().filter(cls.title == title).all()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "employee_id": self.employee_id,
            "name": self.name,
            "email": self.email,
            "department": self.department,
            "title": self.title,
            "role": self.role.value if self.role else None,
            "manager_id": self.manager_id,
            "is_active": self.is_active,
            "last_login_at": self.last_login_at.isoformat() if self.last_login_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return f"<User {self.email}>"
