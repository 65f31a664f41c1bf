"""
stage_settlement/orm/project.py
Projects, groups, membership and system-level settings
"""
from datetime import datetime

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Float, ForeignKey, Text, UniqueConstraint

from stage_settlement.orm.base import Base


class Project(Base):
    """
    A scoring project. Weight columns are nullable per-project overrides
    of the scoring configuration; NULL means "fall back".
    """
    __tablename__ = "projects"

    project_id = Column(String(64), primary_key=True)
    project_name = Column(String(255), nullable=False)
    created_by = Column(String(255), nullable=True)

    # Scoring overrides
    student_ranking_weight = Column(Float, nullable=True)
    teacher_ranking_weight = Column(Float, nullable=True)
    comment_reward_percentile = Column(Float, nullable=True)
    max_comment_selections = Column(Integer, nullable=True)

    created_time = Column(DateTime, nullable=False, default=datetime.utcnow)


class User(Base):
    """Minimal user directory used for display names in settlement results."""
    __tablename__ = "users"

    user_email = Column(String(255), primary_key=True)
    display_name = Column(String(255), nullable=True)


class Group(Base):
    __tablename__ = "groups"

    group_id = Column(String(64), primary_key=True)
    project_id = Column(String(64), ForeignKey("projects.project_id", ondelete="CASCADE"), nullable=False, index=True)
    group_name = Column(String(255), nullable=False)
    status = Column(String(20), nullable=False, default="active")
    created_time = Column(DateTime, nullable=False, default=datetime.utcnow)


class GroupMember(Base):
    """Membership of a user in a project group."""
    __tablename__ = "group_members"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(String(64), ForeignKey("projects.project_id", ondelete="CASCADE"), nullable=False, index=True)
    group_id = Column(String(64), ForeignKey("groups.group_id", ondelete="CASCADE"), nullable=False, index=True)
    user_email = Column(String(255), nullable=False, index=True)
    role = Column(String(20), nullable=False, default="member")
    is_active = Column(Boolean, nullable=False, default=True)
    joined_time = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("group_id", "user_email", name="uq_group_member"),
    )


class ProjectViewer(Base):
    """
    Project-level role assignment.
    Roles: teacher / observer / member. Teachers may manage settlement.
    """
    __tablename__ = "project_viewers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    project_id = Column(String(64), ForeignKey("projects.project_id", ondelete="CASCADE"), nullable=False, index=True)
    user_email = Column(String(255), nullable=False, index=True)
    role = Column(String(20), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        UniqueConstraint("project_id", "user_email", name="uq_project_viewer"),
    )


class GlobalAdmin(Base):
    """Users with system-wide administrative rights."""
    __tablename__ = "global_admins"

    user_email = Column(String(255), primary_key=True)
    granted_time = Column(DateTime, nullable=False, default=datetime.utcnow)


class SystemSetting(Base):
    """Key/value settings, e.g. ``config:student_ranking_weight``."""
    __tablename__ = "system_settings"

    setting_key = Column(String(128), primary_key=True)
    setting_value = Column(Text, nullable=True)
    updated_time = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)
