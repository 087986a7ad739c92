"""Flow execution: ordered step runs, output chaining and fail-fast errors."""

from __future__ import annotations

from contextlib import contextmanager
import logging
import threading
import time
from typing import Callable, Iterable, Iterator, Mapping

from prompt_flow_engine.config import get_config
from prompt_flow_engine.errors import ConfigurationError, ExecutionInProgressError, ProviderError
from prompt_flow_engine.models import (
    STEP_STATUS_FAILED,
    STEP_STATUS_RUNNING,
    STEP_STATUS_SUCCEEDED,
    Flow,
    FlowRunResult,
    Step,
    StepOutput,
    StepStatus,
    carried_output,
)
from prompt_flow_engine.providers import ProviderAdapter, build_default_adapters, get_adapter
from prompt_flow_engine.repository import FlowRepository
from prompt_flow_engine.session import FlowSession
from prompt_flow_engine.variables import missing_variables, substitute

REFERENCE_HEADER = "Reference from previous step:\n"
ERROR_OUTPUT_PREFIX = "Error: "

StatusListener = Callable[[Step], None]

LOGGER = logging.getLogger("prompt_flow_engine.orchestrator")


def output_variables(outputs: Iterable[StepOutput]) -> dict[str, str]:
    """Expose each executed step's output as ``step_<order_index + 1>_output``."""
    return {f"step_{entry.order_index + 1}_output": entry.output for entry in outputs}


def run_variables(
    variables: Mapping[str, str] | None,
    outputs: Iterable[StepOutput],
) -> dict[str, str]:
    """Caller-supplied run values overlaid with the outputs published so far."""
    merged = dict(variables or {})
    merged.update(output_variables(outputs))
    return merged


def merge_variables(step: Step, variables: Mapping[str, str] | None = None) -> dict[str, str]:
    """Run-level values fill names the step does not define; step values win."""
    merged = dict(variables or {})
    merged.update(step.variables)
    return merged


def render_step_prompt(
    step: Step,
    previous_output: str = "",
    variables: Mapping[str, str] | None = None,
) -> str:
    """Build the text sent to the provider for one step.

    Effective content with placeholders substituted; when a previous output
    exists and the step is not the first one, it is prepended as a reference
    block.
    """
    content = substitute(step.effective_content, merge_variables(step, variables))
    if previous_output and step.order_index > 0:
        content = f"{REFERENCE_HEADER}{previous_output}\n\n{content}"
    return content


class FlowOrchestrator:
    """Runs the steps of one flow at a time against a provider adapter."""

    def __init__(
        self,
        repository: FlowRepository,
        adapters: Mapping[str, ProviderAdapter] | None = None,
        *,
        on_status: StatusListener | None = None,
    ) -> None:
        self.repository = repository
        self.adapters = dict(adapters) if adapters is not None else build_default_adapters(get_config())
        self.on_status = on_status
        self._executing = False
        self._state_lock = threading.Lock()

    @property
    def is_executing(self) -> bool:
        return self._executing

    @contextmanager
    def _single_flight(self, action: str) -> Iterator[None]:
        with self._state_lock:
            if self._executing:
                raise ExecutionInProgressError(
                    f"Cannot start {action}: a flow execution is already in progress."
                )
            self._executing = True
        try:
            yield
        finally:
            with self._state_lock:
                self._executing = False

    def _authorized_flow(self, session: FlowSession, flow_id: str) -> Flow:
        session.require_open()
        if session.selected_flow_id != flow_id:
            raise ConfigurationError(
                f"Unauthorized: flow {flow_id} is not the session's selected flow."
            )
        flow = self.repository.get_flow(flow_id)
        if flow is None or flow.user_id != session.user_id:
            raise ConfigurationError(f"Unauthorized: flow {flow_id} does not belong to this user.")
        return flow

    def _authorized_step(self, session: FlowSession, step_id: str) -> tuple[Flow, Step]:
        stored = self.repository.get_step(step_id)
        if stored is None:
            raise ConfigurationError(f"Unauthorized: step {step_id} was not found.")
        flow = self._authorized_flow(session, stored.flow_id)
        step = flow.step_by_id(step_id)
        if step is None:
            raise ConfigurationError(f"Unauthorized: step {step_id} was not found.")
        return flow, step

    @staticmethod
    def _require_api_key(session: FlowSession) -> None:
        if not session.settings.has_api_key:
            raise ConfigurationError(
                "Missing API key: configure a provider API key before running a flow."
            )

    def _transition(self, step: Step, status: StepStatus, output: str | None) -> Step:
        updated = self.repository.record_step_result(step.id, status, output)
        if self.on_status is not None:
            self.on_status(updated)
        return updated

    def _generate(
        self,
        session: FlowSession,
        adapter: ProviderAdapter,
        step: Step,
        previous_output: str,
        variables: Mapping[str, str] | None,
    ) -> str:
        unfilled = missing_variables(step.effective_content, merge_variables(step, variables))
        if unfilled:
            LOGGER.warning(
                "unfilled_placeholders step_id=%s names=%s",
                step.id,
                ",".join(unfilled),
            )
        prompt = render_step_prompt(step, previous_output, variables)
        return adapter.generate(session.settings, prompt).text

    def execute_flow(
        self,
        session: FlowSession,
        flow_id: str,
        *,
        variables: Mapping[str, str] | None = None,
    ) -> FlowRunResult:
        """Run every step of the session's selected flow in order.

        A provider failure marks the failing step failed with an ``Error:``
        output and stops the run; later steps stay idle. Outputs of the steps
        that succeeded are kept on the result and in the repository.

        Each completed output is also published as ``{{step_<n>_output}}``
        (n = order_index + 1) for the steps after it.
        """
        with self._single_flight("execute_flow"):
            flow = self._authorized_flow(session, flow_id)
            self._require_api_key(session)
            adapter = get_adapter(self.adapters, session.settings.provider)
            ordered = flow.ordered_steps()
            if not ordered:
                raise ConfigurationError(f"Flow {flow_id} has no steps to execute.")

            started = time.monotonic()
            self.repository.reset_step_states(flow_id)
            outputs: tuple[StepOutput, ...] = ()
            for step in ordered:
                self._transition(step, STEP_STATUS_RUNNING, None)
                try:
                    text = self._generate(
                        session,
                        adapter,
                        step,
                        carried_output(outputs),
                        run_variables(variables, outputs),
                    )
                except ProviderError as exc:
                    self._transition(step, STEP_STATUS_FAILED, f"{ERROR_OUTPUT_PREFIX}{exc}")
                    self._log_run(flow_id, len(ordered), len(outputs), "error", started)
                    return FlowRunResult(
                        flow_id=flow_id,
                        outputs=outputs,
                        failed_step_id=step.id,
                        error=exc,
                    )
                self._transition(step, STEP_STATUS_SUCCEEDED, text)
                outputs = outputs + (StepOutput(step_id=step.id, order_index=step.order_index, output=text),)

            self._log_run(flow_id, len(ordered), len(outputs), "success", started)
            return FlowRunResult(flow_id=flow_id, outputs=outputs)

    def execute_step(
        self,
        session: FlowSession,
        step_id: str,
        previous_output: str = "",
        *,
        variables: Mapping[str, str] | None = None,
    ) -> str:
        """Generate one step's text without touching persisted step state."""
        with self._single_flight("execute_step"):
            _, step = self._authorized_step(session, step_id)
            self._require_api_key(session)
            adapter = get_adapter(self.adapters, session.settings.provider)
            return self._generate(session, adapter, step, previous_output, variables)

    def rerun_step(
        self,
        session: FlowSession,
        step_id: str,
        *,
        variables: Mapping[str, str] | None = None,
    ) -> Step:
        """Re-run one step in isolation, chaining from the preceding step's stored output."""
        with self._single_flight("rerun_step"):
            flow, step = self._authorized_step(session, step_id)
            self._require_api_key(session)
            adapter = get_adapter(self.adapters, session.settings.provider)

            previous_output = ""
            ordered = flow.ordered_steps()
            position = [candidate.id for candidate in ordered].index(step.id)
            if position > 0:
                previous = ordered[position - 1]
                if previous.status == STEP_STATUS_SUCCEEDED and previous.output:
                    previous_output = previous.output
            earlier = [
                StepOutput(step_id=candidate.id, order_index=candidate.order_index, output=candidate.output)
                for candidate in ordered[:position]
                if candidate.status == STEP_STATUS_SUCCEEDED and candidate.output is not None
            ]

            self._transition(step, STEP_STATUS_RUNNING, None)
            try:
                text = self._generate(
                    session, adapter, step, previous_output, run_variables(variables, earlier)
                )
            except ProviderError as exc:
                LOGGER.warning("step_rerun step_id=%s outcome=error error=%s", step.id, exc)
                return self._transition(step, STEP_STATUS_FAILED, f"{ERROR_OUTPUT_PREFIX}{exc}")
            LOGGER.info("step_rerun step_id=%s outcome=success", step.id)
            return self._transition(step, STEP_STATUS_SUCCEEDED, text)

    @staticmethod
    def _log_run(flow_id: str, step_count: int, completed: int, outcome: str, started: float) -> None:
        LOGGER.info(
            "flow_run flow_id=%s steps=%d completed=%d outcome=%s duration_ms=%d",
            flow_id,
            step_count,
            completed,
            outcome,
            int((time.monotonic() - started) * 1000),
        )
