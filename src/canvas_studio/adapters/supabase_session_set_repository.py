"""Supabase-backed storage of the session set."""

from dataclasses import dataclass
from datetime import UTC, datetime

from supabase import Client

from canvas_studio.domain.durable import SerializedSessionSet
from canvas_studio.domain.providers import SaveReceipt
from canvas_studio.services.persistence import SessionSetRepository

_TABLE = "chat_session_sets"


@dataclass
class SupabaseSessionSetRepository(SessionSetRepository):
    """Stores the whole session set as one JSON row with a version counter."""

    client: Client

    def load(self, session_set_id: str) -> SerializedSessionSet | None:
        """Return the stored session set, if present."""
        response = (
            self.client.table(_TABLE)
            .select("id, payload_json, version, updated_at")
            .eq("id", session_set_id)
            .limit(1)
            .execute()
        )
        if not response.data:
            return None
        row = response.data[0]
        return SerializedSessionSet.model_validate(row["payload_json"])

    def save(self, form: SerializedSessionSet) -> SaveReceipt:
        """Upsert the session set and bump its version."""
        current = (
            self.client.table(_TABLE)
            .select("version")
            .eq("id", form.session_set_id)
            .limit(1)
            .execute()
        )
        version = int(current.data[0]["version"]) + 1 if current.data else 1
        updated_at = datetime.now(tz=UTC).isoformat()
        response = (
            self.client.table(_TABLE)
            .upsert(
                {
                    "id": form.session_set_id,
                    "payload_json": form.model_dump(mode="json"),
                    "version": version,
                    "updated_at": updated_at,
                }
            )
            .execute()
        )
        if not response.data:
            raise RuntimeError("Failed to save session set")
        row = response.data[0]
        return SaveReceipt(
            version=int(row.get("version", version)),
            updated_at=str(row.get("updated_at", updated_at)),
        )
