"""
Offline sync API request models.
"""

from typing import Any

from pydantic import BaseModel, Field

from crm_sync.features.offline_sync.payloads import EntityType
from crm_sync.features.offline_sync.queue import QueueOperation


class EnqueueMutationRequest(BaseModel):
    """A CRM write captured while offline."""

    operation: QueueOperation = Field(..., description="CREATE, UPDATE or DELETE")
    entity_type: EntityType = Field(..., description="Entity the mutation targets")
    entity_id: str = Field(..., min_length=1, description="Server id or temp- client id")
    payload: dict[str, Any] = Field(default_factory=dict, description="Column values to write")
