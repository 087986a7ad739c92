"""Canonical flow, step and provider-settings models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Literal

from prompt_flow_engine.errors import ConfigurationError, ProviderError

StepStatus = Literal["idle", "running", "succeeded", "failed"]
ProviderName = Literal["openai", "anthropic", "google", "llama", "groq"]

STEP_STATUS_IDLE = "idle"
STEP_STATUS_RUNNING = "running"
STEP_STATUS_SUCCEEDED = "succeeded"
STEP_STATUS_FAILED = "failed"
STEP_STATUSES = (
    STEP_STATUS_IDLE,
    STEP_STATUS_RUNNING,
    STEP_STATUS_SUCCEEDED,
    STEP_STATUS_FAILED,
)

SUPPORTED_PROVIDERS: tuple[ProviderName, ...] = ("openai", "anthropic", "google", "llama", "groq")

DEFAULT_PROVIDER: ProviderName = "groq"
DEFAULT_MODEL = "llama3-8b-8192"
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 1000
MIN_TEMPERATURE = 0.0
MAX_TEMPERATURE = 2.0


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class PromptRecord:
    """Read model of a user's saved prompt, the source of a step's snapshot."""

    id: str
    user_id: str
    title: str
    content: str


@dataclass
class Step:
    """One prompt invocation within a flow."""

    id: str
    flow_id: str
    prompt_id: str | None
    order_index: int
    title: str
    snapshot_content: str
    prompt_title: str = ""
    custom_content: str | None = None
    variables: dict[str, str] = field(default_factory=dict)
    output: str | None = None
    status: StepStatus = STEP_STATUS_IDLE
    created_at: datetime = field(default_factory=utc_now)

    @property
    def effective_content(self) -> str:
        """Custom content when set, else the content snapshotted at add time."""
        if self.custom_content is not None:
            return self.custom_content
        return self.snapshot_content


@dataclass
class Flow:
    """Ordered chain of steps owned by one user."""

    id: str
    user_id: str
    name: str
    description: str | None = None
    steps: list[Step] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime | None = None

    def ordered_steps(self) -> list[Step]:
        return sorted(self.steps, key=lambda step: step.order_index)

    def step_by_id(self, step_id: str) -> Step | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None


@dataclass(frozen=True)
class ProviderSettings:
    """Provider selection and generation parameters for a session."""

    provider: ProviderName = DEFAULT_PROVIDER
    model: str = DEFAULT_MODEL
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = DEFAULT_MAX_TOKENS
    api_key: str = ""

    def __repr__(self) -> str:
        return (
            "ProviderSettings("
            f"provider={self.provider!r}, "
            f"model={self.model!r}, "
            f"temperature={self.temperature!r}, "
            f"max_tokens={self.max_tokens!r}, "
            "api_key='***REDACTED***')"
        )

    def validate(self) -> "ProviderSettings":
        """Check ranges and return self; raise ConfigurationError on bad values."""
        if self.provider not in SUPPORTED_PROVIDERS:
            supported = ", ".join(SUPPORTED_PROVIDERS)
            raise ConfigurationError(
                f"Unsupported provider: {self.provider!r}; supported providers: {supported}"
            )
        if not str(self.model or "").strip():
            raise ConfigurationError("Model id must not be empty.")
        if not MIN_TEMPERATURE <= float(self.temperature) <= MAX_TEMPERATURE:
            raise ConfigurationError(
                f"Temperature must be within [{MIN_TEMPERATURE:g}, {MAX_TEMPERATURE:g}], "
                f"got {self.temperature!r}."
            )
        if int(self.max_tokens) <= 0:
            raise ConfigurationError(f"max_tokens must be > 0, got {self.max_tokens!r}.")
        return self

    @property
    def has_api_key(self) -> bool:
        return bool(self.api_key.strip())


@dataclass(frozen=True)
class StepOutput:
    """One entry of a run's ordered output log."""

    step_id: str
    order_index: int
    output: str


def carried_output(outputs: tuple[StepOutput, ...] | list[StepOutput]) -> str:
    """Return the output of the most recently executed step, or empty text."""
    if not outputs:
        return ""
    return outputs[-1].output


@dataclass(frozen=True)
class FlowRunResult:
    """Outcome of one flow execution."""

    flow_id: str
    outputs: tuple[StepOutput, ...] = ()
    failed_step_id: str | None = None
    error: ProviderError | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    @property
    def final_output(self) -> str:
        return carried_output(self.outputs)

    @property
    def step_outputs(self) -> dict[str, str]:
        return {entry.step_id: entry.output for entry in self.outputs}

    def raise_for_error(self) -> None:
        """Re-raise the provider error that aborted the run, if any."""
        if self.error is not None:
            raise self.error
