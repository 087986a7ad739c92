"""Relational schema for prompts, flows, steps and step overrides."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
    event,
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from sqlalchemy.pool import StaticPool

from prompt_flow_engine.models import STEP_STATUS_IDLE, utc_now

Base = declarative_base()


def _new_id() -> str:
    return str(uuid4())


class PromptRow(Base):
    __tablename__ = "prompts"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(64), nullable=False, index=True)
    title = Column(String(255), nullable=False, default="")
    content = Column(Text, nullable=False, default="")
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), onupdate=utc_now)


class FlowRow(Base):
    __tablename__ = "flows"

    id = Column(String(36), primary_key=True, default=_new_id)
    user_id = Column(String(64), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), onupdate=utc_now)

    steps = relationship(
        "FlowStepRow",
        back_populates="flow",
        cascade="all, delete-orphan",
        order_by="FlowStepRow.order_index",
        passive_deletes=True,
    )


class FlowStepRow(Base):
    __tablename__ = "flow_steps"

    id = Column(String(36), primary_key=True, default=_new_id)
    flow_id = Column(String(36), ForeignKey("flows.id", ondelete="CASCADE"), nullable=False, index=True)
    prompt_id = Column(String(36), ForeignKey("prompts.id", ondelete="SET NULL"), nullable=True)
    order_index = Column(Integer, nullable=False)
    step_title = Column(String(255), nullable=False, default="")
    # Snapshot of the source prompt taken when the step is added.
    prompt_title = Column(String(255), nullable=False, default="")
    prompt_content = Column(Text, nullable=False, default="")
    output = Column(Text, nullable=True)
    status = Column(String(16), nullable=False, default=STEP_STATUS_IDLE)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), onupdate=utc_now)

    flow = relationship("FlowRow", back_populates="steps")
    prompt = relationship("PromptRow")
    override = relationship(
        "StepOverrideRow",
        back_populates="step",
        uselist=False,
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class StepOverrideRow(Base):
    __tablename__ = "prompt_flow_step"

    id = Column(String(36), primary_key=True, default=_new_id)
    flow_step_id = Column(
        String(36),
        ForeignKey("flow_steps.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    custom_content = Column(Text, nullable=True)
    variables = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), onupdate=utc_now)

    step = relationship("FlowStepRow", back_populates="override")


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    del connection_record
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_db_engine(database_url: str) -> Engine:
    """Create an engine; in-memory SQLite shares one connection across sessions."""
    if database_url.startswith("sqlite"):
        kwargs: dict[str, object] = {"connect_args": {"check_same_thread": False}}
        if database_url in {"sqlite://", "sqlite:///:memory:"}:
            kwargs["poolclass"] = StaticPool
        engine = create_engine(database_url, **kwargs)
        event.listen(engine, "connect", _enable_sqlite_foreign_keys)
        return engine
    return create_engine(database_url, pool_pre_ping=True)


def create_session_factory(engine: Engine) -> sessionmaker:
    # expire_on_commit=False: rows are converted to dataclasses after commit.
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(bind=engine)
