"""
Task Payloads for HRFlow

Tasks are a tagged variant keyed by `task_type`. Each variant has its own
payload shape (what the assignee is asked to do) and its own completion
shape (what they must hand back):

- general:  no required input (optional notes)
- document: a document id that Document Storage can resolve
- form:     a response containing every required field

All models are immutable Pydantic models that reject unknown fields.
"""

from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import AliasChoices, BaseModel, Field, TypeAdapter, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from .exceptions import ValidationError


def pydantic_defects(exc: PydanticValidationError, prefix: str = "") -> List[str]:
    """Flatten a Pydantic error into readable defect strings."""
    defects = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        if prefix:
            location = f"{prefix}.{location}" if location else prefix
        defects.append(f"{location}: {error.get('msg')}" if location else error.get("msg"))
    return defects


# ============================================================================
# TASK PAYLOADS (what the assignee is asked to do)
# ============================================================================

class _TaskPayloadBase(BaseModel):
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    instructions: Optional[str] = None
    priority: Literal["low", "medium", "high", "urgent"] = "medium"

    class Config:
        frozen = True
        extra = "forbid"


class GeneralTaskPayload(_TaskPayloadBase):
    """Free-form to-do (e.g. "Set up laptop", "Confirm welcome email sent")."""

    task_type: Literal["general"] = "general"
    attachments: List[str] = Field(default_factory=list)
    links: List[str] = Field(default_factory=list)


class DocumentTaskPayload(_TaskPayloadBase):
    """Request for the employee to upload a document (I-9, contract, ID)."""

    task_type: Literal["document"] = "document"
    document_type: str = Field(
        ..., min_length=1, validation_alias=AliasChoices("document_type", "documentType")
    )
    category: Optional[str] = None


class FormField(BaseModel):
    name: str = Field(..., min_length=1)
    label: Optional[str] = None
    type: Literal["text", "textarea", "email", "number", "date", "select", "checkbox"] = "text"
    required: bool = False
    options: List[str] = Field(default_factory=list)

    class Config:
        frozen = True
        extra = "forbid"

    @model_validator(mode="after")
    def select_needs_options(self):
        if self.type == "select" and not self.options:
            raise ValueError(f"Select field '{self.name}' must declare options")
        return self


class FormTaskPayload(_TaskPayloadBase):
    """Structured questionnaire (emergency contact, tax details, exit survey)."""

    task_type: Literal["form"] = "form"
    fields: List[FormField] = Field(..., min_length=1)
    default_values: Dict[str, Any] = Field(
        default_factory=dict, validation_alias=AliasChoices("default_values", "defaultValues")
    )

    @field_validator("fields")
    @classmethod
    def unique_field_names(cls, v: List[FormField]) -> List[FormField]:
        names = [f.name for f in v]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"Duplicate form field names: {', '.join(duplicates)}")
        return v

    @property
    def required_fields(self) -> List[str]:
        return [f.name for f in self.fields if f.required]


TaskPayload = Annotated[
    Union[GeneralTaskPayload, DocumentTaskPayload, FormTaskPayload],
    Field(discriminator="task_type"),
]

_task_payload_adapter = TypeAdapter(TaskPayload)


def parse_task_payload(data: Dict[str, Any]) -> Union[GeneralTaskPayload, DocumentTaskPayload, FormTaskPayload]:
    """
    Build the typed payload for a task definition.

    Raises:
        ValidationError: unknown task_type or malformed payload
    """
    if not isinstance(data, dict):
        raise ValidationError("Invalid task payload", ["task payload must be an object"])
    data = dict(data)
    data.setdefault("task_type", "general")
    try:
        return _task_payload_adapter.validate_python(data)
    except PydanticValidationError as e:
        raise ValidationError("Invalid task payload", pydantic_defects(e))


# ============================================================================
# COMPLETION INPUTS (what the assignee hands back)
# ============================================================================

class _CompletionBase(BaseModel):
    notes: Optional[str] = None

    class Config:
        frozen = True
        extra = "forbid"


class GeneralTaskCompletion(_CompletionBase):
    pass


class DocumentTaskCompletion(_CompletionBase):
    document_id: str = Field(
        ..., min_length=1, validation_alias=AliasChoices("document_id", "documentId")
    )


class FormTaskCompletion(_CompletionBase):
    form_response: Dict[str, Any] = Field(
        ..., validation_alias=AliasChoices("form_response", "formResponse")
    )

    def missing_fields(self, form: FormTaskPayload) -> List[str]:
        """Required fields that are absent or blank in the response."""
        missing = []
        for name in form.required_fields:
            value = self.form_response.get(name)
            if value is None or (isinstance(value, str) and not value.strip()):
                missing.append(name)
        return missing


COMPLETION_MODELS = {
    "general": GeneralTaskCompletion,
    "document": DocumentTaskCompletion,
    "form": FormTaskCompletion,
}


def parse_completion(task_type: str, payload: Optional[Dict[str, Any]]):
    """
    Validate a completion payload against the task's declared type.

    Raises:
        ValidationError: payload shape does not match the task type
    """
    model = COMPLETION_MODELS.get(task_type)
    if model is None:
        raise ValidationError("Invalid completion", [f"unknown task_type '{task_type}'"])
    try:
        return model.model_validate(payload or {})
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid {task_type} task completion", pydantic_defects(e))
