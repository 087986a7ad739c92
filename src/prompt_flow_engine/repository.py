"""SQLAlchemy-backed CRUD for flows, steps and step overrides."""

from __future__ import annotations

from contextlib import contextmanager
import logging
from typing import Iterator, Mapping

from sqlalchemy import func, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from prompt_flow_engine.config import AppConfig
from prompt_flow_engine.database import (
    FlowRow,
    FlowStepRow,
    PromptRow,
    StepOverrideRow,
    create_db_engine,
    create_session_factory,
    init_db,
)
from prompt_flow_engine.errors import PersistenceError
from prompt_flow_engine.models import (
    STEP_STATUS_IDLE,
    STEP_STATUSES,
    Flow,
    PromptRecord,
    Step,
    StepStatus,
)
from prompt_flow_engine.variables import prune_variables

LOGGER = logging.getLogger("prompt_flow_engine.repository")

_STEP_LOAD_OPTIONS = (
    selectinload(FlowStepRow.prompt),
    selectinload(FlowStepRow.override),
)


def _to_prompt(row: PromptRow) -> PromptRecord:
    return PromptRecord(id=row.id, user_id=row.user_id, title=row.title or "", content=row.content or "")


def _to_step(row: FlowStepRow) -> Step:
    override = row.override
    prompt_title = row.prompt.title if row.prompt is not None else row.prompt_title
    return Step(
        id=row.id,
        flow_id=row.flow_id,
        prompt_id=row.prompt_id,
        order_index=row.order_index,
        title=row.step_title or "",
        snapshot_content=row.prompt_content or "",
        prompt_title=prompt_title or "",
        custom_content=override.custom_content if override is not None else None,
        variables=dict(override.variables or {}) if override is not None else {},
        output=row.output,
        status=row.status or STEP_STATUS_IDLE,
        created_at=row.created_at,
    )


def _to_flow(row: FlowRow, steps: list[FlowStepRow] | None = None) -> Flow:
    step_models = [_to_step(step) for step in steps] if steps is not None else []
    return Flow(
        id=row.id,
        user_id=row.user_id,
        name=row.name,
        description=row.description,
        steps=sorted(step_models, key=lambda step: step.order_index),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class FlowRepository:
    """Persistence for Flow/Step entities.

    Every public method runs in its own transaction. Multi-row mutations
    (delete plus renumber, reorder, step plus override insert) commit or roll
    back as a unit. No locking is done: one active editor per flow is assumed.
    """

    def __init__(self, engine: Engine, *, create_schema: bool = True) -> None:
        self.engine = engine
        self._session_factory = create_session_factory(engine)
        if create_schema:
            init_db(engine)

    @classmethod
    def from_url(cls, database_url: str) -> "FlowRepository":
        return cls(create_db_engine(database_url))

    @classmethod
    def from_config(cls, config: AppConfig) -> "FlowRepository":
        return cls.from_url(config.database_url)

    @contextmanager
    def _transaction(self, action: str) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            LOGGER.error("repository_error action=%s error=%s", action, exc)
            raise PersistenceError(f"{action} failed: {exc}") from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @staticmethod
    def _require_flow(session: Session, flow_id: str) -> FlowRow:
        row = session.get(FlowRow, flow_id)
        if row is None:
            raise PersistenceError(f"Flow not found: {flow_id}")
        return row

    @staticmethod
    def _require_step(session: Session, step_id: str) -> FlowStepRow:
        row = session.get(FlowStepRow, step_id, options=list(_STEP_LOAD_OPTIONS))
        if row is None:
            raise PersistenceError(f"Step not found: {step_id}")
        return row

    @staticmethod
    def _ordered_step_rows(session: Session, flow_id: str) -> list[FlowStepRow]:
        statement = (
            select(FlowStepRow)
            .where(FlowStepRow.flow_id == flow_id)
            .options(*_STEP_LOAD_OPTIONS)
            .order_by(FlowStepRow.order_index, FlowStepRow.created_at)
        )
        return list(session.scalars(statement).all())

    @staticmethod
    def _assign_contiguous_indices(rows: list[FlowStepRow]) -> int:
        changed = 0
        for index, row in enumerate(rows):
            if row.order_index != index:
                row.order_index = index
                changed += 1
        return changed

    def _load_flow(self, session: Session, flow_id: str) -> Flow:
        session.flush()
        row = self._require_flow(session, flow_id)
        return _to_flow(row, self._ordered_step_rows(session, flow_id))

    # Prompt read model

    def save_prompt(self, user_id: str, title: str, content: str) -> PromptRecord:
        with self._transaction("save_prompt") as session:
            row = PromptRow(user_id=user_id, title=title, content=content)
            session.add(row)
            session.flush()
            return _to_prompt(row)

    def update_prompt(
        self,
        prompt_id: str,
        *,
        title: str | None = None,
        content: str | None = None,
    ) -> PromptRecord:
        with self._transaction("update_prompt") as session:
            row = session.get(PromptRow, prompt_id)
            if row is None:
                raise PersistenceError(f"Prompt not found: {prompt_id}")
            if title is not None:
                row.title = title
            if content is not None:
                row.content = content
            session.flush()
            return _to_prompt(row)

    def get_prompt(self, prompt_id: str) -> PromptRecord | None:
        with self._transaction("get_prompt") as session:
            row = session.get(PromptRow, prompt_id)
            return _to_prompt(row) if row is not None else None

    # Flows

    def create_flow(self, user_id: str, name: str, description: str | None = None) -> Flow:
        with self._transaction("create_flow") as session:
            row = FlowRow(user_id=user_id, name=name, description=description)
            session.add(row)
            session.flush()
            LOGGER.info("flow_created flow_id=%s user_id=%s", row.id, user_id)
            return _to_flow(row, [])

    def list_flows(self, user_id: str) -> list[Flow]:
        """Return the user's flows, newest first, without their steps."""
        with self._transaction("list_flows") as session:
            statement = (
                select(FlowRow)
                .where(FlowRow.user_id == user_id)
                .order_by(FlowRow.created_at.desc())
            )
            return [_to_flow(row) for row in session.scalars(statement).all()]

    def get_flow(self, flow_id: str) -> Flow | None:
        """Return a flow with its steps joined to prompt and override rows."""
        with self._transaction("get_flow") as session:
            row = session.get(FlowRow, flow_id)
            if row is None:
                return None
            return _to_flow(row, self._ordered_step_rows(session, flow_id))

    def update_flow(
        self,
        flow_id: str,
        *,
        name: str | None = None,
        description: str | None = None,
    ) -> Flow:
        with self._transaction("update_flow") as session:
            row = self._require_flow(session, flow_id)
            if name is not None:
                row.name = name
            if description is not None:
                row.description = description
            return self._load_flow(session, flow_id)

    def delete_flow(self, flow_id: str) -> bool:
        with self._transaction("delete_flow") as session:
            row = session.get(FlowRow, flow_id)
            if row is None:
                return False
            session.delete(row)
            LOGGER.info("flow_deleted flow_id=%s", flow_id)
            return True

    # Steps

    def get_step(self, step_id: str) -> Step | None:
        with self._transaction("get_step") as session:
            row = session.get(FlowStepRow, step_id, options=list(_STEP_LOAD_OPTIONS))
            return _to_step(row) if row is not None else None

    def add_step(
        self,
        flow_id: str,
        prompt_id: str,
        step_title: str,
        *,
        custom_content: str | None = None,
        variables: Mapping[str, str] | None = None,
    ) -> Step:
        """Append a step whose content is snapshotted from the source prompt."""
        with self._transaction("add_step") as session:
            self._require_flow(session, flow_id)
            prompt = session.get(PromptRow, prompt_id)
            if prompt is None:
                raise PersistenceError(f"Prompt not found: {prompt_id}")

            max_index = session.scalar(
                select(func.max(FlowStepRow.order_index)).where(FlowStepRow.flow_id == flow_id)
            )
            row = FlowStepRow(
                flow_id=flow_id,
                prompt_id=prompt.id,
                order_index=0 if max_index is None else max_index + 1,
                step_title=step_title or prompt.title or "",
                prompt_title=prompt.title or "",
                prompt_content=prompt.content or "",
            )
            if custom_content is not None or variables:
                effective = custom_content if custom_content is not None else row.prompt_content
                row.override = StepOverrideRow(
                    custom_content=custom_content,
                    variables=prune_variables(effective, variables or {}),
                )
            session.add(row)
            session.flush()
            LOGGER.info(
                "step_added flow_id=%s step_id=%s order_index=%d",
                flow_id,
                row.id,
                row.order_index,
            )
            return _to_step(row)

    def update_step_content(
        self,
        step_id: str,
        custom_content: str | None,
        variables: Mapping[str, str] | None,
    ) -> Step:
        """Upsert the step's override row with new content and variable values."""
        with self._transaction("update_step_content") as session:
            row = self._require_step(session, step_id)
            effective = custom_content if custom_content is not None else row.prompt_content
            pruned = prune_variables(effective, variables or {})
            if row.override is None:
                row.override = StepOverrideRow(custom_content=custom_content, variables=pruned)
            else:
                row.override.custom_content = custom_content
                row.override.variables = pruned
            session.flush()
            return _to_step(row)

    def rename_step(self, step_id: str, title: str) -> Step:
        with self._transaction("rename_step") as session:
            row = self._require_step(session, step_id)
            row.step_title = title
            session.flush()
            return _to_step(row)

    def delete_step(self, step_id: str) -> bool:
        """Delete a step and renumber its siblings contiguously from 0."""
        with self._transaction("delete_step") as session:
            row = session.get(FlowStepRow, step_id)
            if row is None:
                return False
            flow_id = row.flow_id
            session.delete(row)
            session.flush()
            renumbered = self._assign_contiguous_indices(self._ordered_step_rows(session, flow_id))
            LOGGER.info(
                "step_deleted flow_id=%s step_id=%s renumbered=%d",
                flow_id,
                step_id,
                renumbered,
            )
            return True

    def reorder_step(self, step_id: str, new_index: int) -> Flow:
        """Move one step to `new_index`, shifting the steps in between by one."""
        with self._transaction("reorder_step") as session:
            row = self._require_step(session, step_id)
            flow_id = row.flow_id
            siblings = self._ordered_step_rows(session, flow_id)
            if not 0 <= new_index < len(siblings):
                raise ValueError(
                    f"new_index must be within [0, {len(siblings) - 1}], got {new_index}."
                )
            siblings.remove(row)
            siblings.insert(new_index, row)
            shifted = self._assign_contiguous_indices(siblings)
            LOGGER.info(
                "step_reordered flow_id=%s step_id=%s new_index=%d shifted=%d",
                flow_id,
                step_id,
                new_index,
                shifted,
            )
            return self._load_flow(session, flow_id)

    def reorder_steps(self, flow_id: str, step_ids: list[str]) -> Flow:
        """Assign order_index by position in `step_ids`, which must list every step once."""
        with self._transaction("reorder_steps") as session:
            self._require_flow(session, flow_id)
            rows = self._ordered_step_rows(session, flow_id)
            by_id = {row.id: row for row in rows}
            if len(step_ids) != len(by_id) or set(step_ids) != set(by_id):
                raise ValueError("step_ids must contain each step of the flow exactly once.")
            self._assign_contiguous_indices([by_id[step_id] for step_id in step_ids])
            return self._load_flow(session, flow_id)

    def record_step_result(self, step_id: str, status: StepStatus, output: str | None) -> Step:
        if status not in STEP_STATUSES:
            raise ValueError(f"Unsupported step status: {status!r}")
        with self._transaction("record_step_result") as session:
            row = self._require_step(session, step_id)
            row.status = status
            row.output = output
            session.flush()
            return _to_step(row)

    def reset_step_states(self, flow_id: str) -> None:
        """Return every step of the flow to idle with no output."""
        with self._transaction("reset_step_states") as session:
            session.execute(
                update(FlowStepRow)
                .where(FlowStepRow.flow_id == flow_id)
                .values(status=STEP_STATUS_IDLE, output=None)
            )
