"""
Typed payloads for queued mutations.

Each entity type has its own schema; the union is discriminated on
``entity_type`` so a replayed payload is validated against the right model.
Unknown columns are kept (the CRUD layer owns the full schema) but must be
plain snake_case identifiers.
"""

import re
from enum import Enum
from typing import Annotated, Any, ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from crm_sync.features.offline_sync.errors import PayloadValidationError

TEMP_ID_PREFIX = "temp-"

_COLUMN_RE = re.compile(r"^[a-z_][a-z0-9_]*$")


class EntityType(str, Enum):
    REQUIREMENT = "requirement"
    CONSULTANT = "consultant"
    INTERVIEW = "interview"
    DOCUMENT = "document"
    EMAIL = "email"


def is_temp_id(entity_id: str | None) -> bool:
    return bool(entity_id) and entity_id.startswith(TEMP_ID_PREFIX)


class _EntityPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    # Fields that must be present when the row is created
    required_on_create: ClassVar[tuple[str, ...]] = ()

    id: str | None = None

    @model_validator(mode="after")
    def _check_columns(self):
        for key in self.model_extra or {}:
            if not _COLUMN_RE.match(key):
                raise ValueError(f"Invalid column name: {key!r}")
        return self

    def missing_for_create(self) -> list[str]:
        return [name for name in self.required_on_create if getattr(self, name, None) in (None, "")]

    def to_row(self) -> dict[str, Any]:
        """Column values as the client sent them, without the discriminator."""
        return self.model_dump(exclude={"entity_type"}, exclude_unset=True)


class RequirementPayload(_EntityPayload):
    entity_type: Literal["requirement"] = "requirement"
    required_on_create: ClassVar[tuple[str, ...]] = ("title",)

    title: str | None = None
    description: str | None = None
    status: str | None = None
    user_id: str | None = None


class ConsultantPayload(_EntityPayload):
    entity_type: Literal["consultant"] = "consultant"
    required_on_create: ClassVar[tuple[str, ...]] = ("name",)

    name: str | None = None
    email: str | None = None
    status: str | None = None
    user_id: str | None = None


class InterviewPayload(_EntityPayload):
    entity_type: Literal["interview"] = "interview"
    required_on_create: ClassVar[tuple[str, ...]] = ("requirement_id",)

    requirement_id: str | None = None
    consultant_id: str | None = None
    scheduled_date: str | None = None
    status: str | None = None


class DocumentPayload(_EntityPayload):
    entity_type: Literal["document"] = "document"
    required_on_create: ClassVar[tuple[str, ...]] = ("name",)

    name: str | None = None
    type: str | None = None
    content: str | None = None
    user_id: str | None = None


class EmailPayload(_EntityPayload):
    entity_type: Literal["email"] = "email"
    required_on_create: ClassVar[tuple[str, ...]] = ("recipient_email",)

    recipient_email: str | None = None
    subject: str | None = None
    body: str | None = None
    requirement_id: str | None = None


MutationPayload = Annotated[
    RequirementPayload | ConsultantPayload | InterviewPayload | DocumentPayload | EmailPayload,
    Field(discriminator="entity_type"),
]

_payload_adapter = TypeAdapter(MutationPayload)


def validate_payload(operation: str, entity_type: EntityType | str, payload: dict | None) -> MutationPayload:
    """
    Validate a queued payload against its entity schema.

    Raises:
        PayloadValidationError: unknown entity type, bad field types or a
            CREATE missing required fields
    """
    entity = entity_type.value if isinstance(entity_type, EntityType) else str(entity_type)
    data = dict(payload or {})
    data.pop("entity_type", None)

    try:
        model = _payload_adapter.validate_python({**data, "entity_type": entity})
    except ValidationError as e:
        raise PayloadValidationError(f"Invalid {entity} payload: {e.errors(include_url=False)}") from e

    if operation == "CREATE":
        missing = model.missing_for_create()
        if missing:
            raise PayloadValidationError(f"{entity} CREATE missing required fields: {', '.join(missing)}")
    return model
