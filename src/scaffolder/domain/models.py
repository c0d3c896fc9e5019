from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Dict, List, Literal, Optional, Union
import uuid

from pydantic import BaseModel, Field


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat().replace("+00:00", "Z")


def new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


Role = Literal["system", "user", "assistant"]
Phase = Literal["intake", "clarification", "design", "planning", "build", "complete"]
Severity = Literal["info", "success", "warning", "error"]
BuildStatus = Literal["GENERATING", "COMPLETED", "FAILED", "CANCELLED"]
TrackerCategory = Literal["expense", "habit", "project", "health", "learning", "inventory", "time", "custom"]
FieldType = Literal["text", "textarea", "number", "date", "boolean", "select"]
ViewType = Literal["table", "chart", "cards"]
AnswerValue = Union[str, List[str]]


class Message(BaseModel):
    id: str = Field(default_factory=lambda: new_id("msg"))
    role: Role
    content: str
    timestamp: str = Field(default_factory=utc_now_iso)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class QuestionOption(BaseModel):
    id: str
    label: str
    description: Optional[str] = None


class Question(BaseModel):
    id: str
    text: str
    type: Literal["single", "multiple", "text"] = "multiple"
    category: Literal["data", "logic", "ui", "integration"] = "data"
    options: List[QuestionOption] = Field(default_factory=list)
    answered: bool = False


class ParsedIntent(BaseModel):
    category: TrackerCategory = "custom"
    entities: List[str] = Field(default_factory=list)
    actions: List[str] = Field(default_factory=list)
    relationships: List[str] = Field(default_factory=list)
    suggested_name: str = "My Tracker"
    confidence: float = 0.5
    original_prompt: Optional[str] = None


class FieldDefinition(BaseModel):
    name: str
    label: str
    type: FieldType = "text"
    required: bool = False
    options: Optional[List[str]] = None
    placeholder: Optional[str] = None
    generated: bool = False


class ViewConfig(BaseModel):
    type: ViewType
    title: str
    config: Dict[str, Any] = Field(default_factory=dict)


class DataStoreConfig(BaseModel):
    name: str = "entries"
    label: str
    fields: List[FieldDefinition] = Field(default_factory=list)


class AppSpec(BaseModel):
    """Resolved application specification: data schema plus views."""

    name: str
    description: str = ""
    category: TrackerCategory = "custom"
    data_store: DataStoreConfig
    views: List[ViewConfig] = Field(default_factory=list)
    features: Dict[str, bool] = Field(
        default_factory=lambda: {"allowEdit": True, "allowDelete": True, "allowExport": False}
    )


class ComponentPlan(BaseModel):
    name: str
    type: str
    description: str = ""
    props: Dict[str, str] = Field(default_factory=dict)


class PlanArchitecture(BaseModel):
    primitives: List[str] = Field(default_factory=list)
    data_flow: str = ""


class PlanComponents(BaseModel):
    form: ComponentPlan
    views: List[ComponentPlan] = Field(default_factory=list)


class ImplementationPlan(BaseModel):
    overview: str
    architecture: PlanArchitecture
    components: PlanComponents
    steps: List[str] = Field(default_factory=list)
    estimated_complexity: Literal["simple", "moderate", "complex"] = "simple"


@dataclass
class Readiness:
    """Completeness scores (0-100) per dimension of the target specification."""

    schema: int = 0
    ui: int = 0
    workflow: int = 0
    overall: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {"schema": self.schema, "ui": self.ui, "workflow": self.workflow, "overall": self.overall}


class Checkpoint(BaseModel):
    id: str = Field(default_factory=lambda: new_id("cp"))
    label: str
    created_at: str = Field(default_factory=utc_now_iso)
    snapshot: Dict[str, Any] = Field(default_factory=dict)


class Proposal(BaseModel):
    id: str
    title: str
    description: str = ""
    fields: List[FieldDefinition] = Field(default_factory=list)
    layout: Optional[Dict[str, Any]] = None
    workflows: List[Dict[str, Any]] = Field(default_factory=list)


class ConversationState(BaseModel):
    id: str = Field(default_factory=lambda: new_id("conv"))
    version: str = "v2"
    owner_id: str = "anonymous"
    phase: Phase = "intake"
    messages: List[Message] = Field(default_factory=list)
    answers: Dict[str, AnswerValue] = Field(default_factory=dict)
    questions: List[Question] = Field(default_factory=list)
    intent: Optional[ParsedIntent] = None
    spec: Optional[AppSpec] = None
    plan: Optional[ImplementationPlan] = None
    layout: Optional[Dict[str, Any]] = None
    workflows: List[Dict[str, Any]] = Field(default_factory=list)
    readiness: Readiness = Field(default_factory=Readiness)
    checkpoints: List[Checkpoint] = Field(default_factory=list)
    proposals: List[Proposal] = Field(default_factory=list)
    pending_user_messages: List[Message] = Field(default_factory=list)
    unknown_answer_ids: List[str] = Field(default_factory=list)
    feedback_session: Optional[Dict[str, Any]] = None
    app_id: Optional[str] = None
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)


class GenerationLogEntry(BaseModel):
    timestamp: str = Field(default_factory=utc_now_iso)
    level: Literal["info", "warning", "error"] = "info"
    message: str


class GeneratedAppRecord(BaseModel):
    id: str = Field(default_factory=lambda: new_id("app"))
    conversation_id: Optional[str] = None
    owner_id: str = "anonymous"
    name: str
    description: str = ""
    spec: AppSpec
    layout: Optional[Dict[str, Any]] = None
    files: Dict[str, str] = Field(default_factory=dict)
    package_json: Dict[str, Any] = Field(default_factory=dict)
    generation_log: List[GenerationLogEntry] = Field(default_factory=list)
    build_status: BuildStatus = "GENERATING"
    quality_score: Optional[int] = None
    used_fallback: bool = False
    chat_summary: Optional[str] = None
    version: str = "v2"
    created_at: str = Field(default_factory=utc_now_iso)
    updated_at: str = Field(default_factory=utc_now_iso)


class StatusEvent(BaseModel):
    id: str = Field(default_factory=lambda: f"status-{uuid.uuid4().hex[:16]}")
    type: Literal["status"] = "status"
    phase: str
    message: str
    severity: Severity = "info"
    progress: int = Field(default=0, ge=0, le=100)
    technical_details: Optional[str] = None
    timestamp: str = Field(default_factory=utc_now_iso)


class ToolExecution(BaseModel):
    tool: str
    args: Dict[str, Any] = Field(default_factory=dict)
    result: str = ""


class AgentChangeManifest(BaseModel):
    modified_files: List[str] = Field(default_factory=list)
    created_files: List[str] = Field(default_factory=list)
    deleted_files: List[str] = Field(default_factory=list)
    added_dependencies: List[str] = Field(default_factory=list)
    tool_executions: List[ToolExecution] = Field(default_factory=list)
    chat_summary: Optional[str] = None
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.modified_files or self.created_files or self.deleted_files or self.added_dependencies)
