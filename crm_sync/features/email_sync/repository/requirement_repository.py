"""
Read-only access to a user's open requirements for email matching.
"""

from crm_sync.db.helpers import fetch_all
from crm_sync.db.pool import DatabasePoolManager
from crm_sync.features.matching import Requirement, RequirementStatus

# Requirement workflow states that no longer accept email links
CLOSED_STATUSES = ("CLOSED", "REJECTED")


class RequirementRepository:
    def __init__(self, pool: DatabasePoolManager):
        self.pool = pool

    async def list_open(self, user_id: str) -> list[Requirement]:
        query = """
            SELECT id, title, description
            FROM requirements
            WHERE user_id = %s
              AND COALESCE(UPPER(status), 'NEW') <> ALL(%s)
            ORDER BY created_at, id
        """
        rows = await fetch_all(self.pool, query, (user_id, list(CLOSED_STATUSES)))
        return [
            Requirement(
                id=str(row["id"]),
                title=row.get("title") or "",
                description=row.get("description") or "",
                status=RequirementStatus.OPEN,
            )
            for row in rows
        ]
