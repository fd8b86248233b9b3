from __future__ import annotations
from typing import Dict, Optional

from pydantic import BaseModel, Field
from sqlalchemy import delete, select
from sqlalchemy.orm import sessionmaker

from integrations.db.models import DestinationPreferenceRow

# category name under which a user's single default destination is stored
DEFAULT_CATEGORY = "default"


class DestinationPreferences(BaseModel):
    """A user's destination settings for one provider, as read at dispatch time."""

    default: Optional[str] = None
    categories: Dict[str, str] = Field(default_factory=dict)
    scoped: Dict[str, Dict[str, str]] = Field(default_factory=dict)

    def scoped_for(self, scope_key: str | None) -> Dict[str, str]:
        return self.scoped.get(scope_key, {}) if scope_key else {}


class PreferenceStore:
    def __init__(self, session_factory: sessionmaker):
        self._sessions = session_factory

    def get_preferences(self, user_id: str, provider: str) -> DestinationPreferences:
        stmt = select(DestinationPreferenceRow).where(
            DestinationPreferenceRow.user_id == user_id,
            DestinationPreferenceRow.provider == provider,
        )
        prefs = DestinationPreferences()
        with self._sessions() as db:
            for row in db.execute(stmt).scalars():
                if row.scope_key:
                    prefs.scoped.setdefault(row.scope_key, {})[row.category] = row.destination
                elif row.category == DEFAULT_CATEGORY:
                    prefs.default = row.destination
                else:
                    prefs.categories[row.category] = row.destination
        return prefs

    def set_destination(
        self,
        user_id: str,
        provider: str,
        category: str,
        destination: str,
        scope_key: str | None = None,
    ) -> None:
        if not destination:
            raise ValueError("destination required")
        stmt = select(DestinationPreferenceRow).where(
            DestinationPreferenceRow.user_id == user_id,
            DestinationPreferenceRow.provider == provider,
            DestinationPreferenceRow.scope_key == (scope_key or ""),
            DestinationPreferenceRow.category == category,
        )
        with self._sessions.begin() as db:
            row = db.execute(stmt.with_for_update()).scalar_one_or_none()
            if row is None:
                db.add(DestinationPreferenceRow(
                    user_id=user_id,
                    provider=provider,
                    scope_key=scope_key or "",
                    category=category,
                    destination=destination,
                ))
            else:
                row.destination = destination

    def clear_destination(self, user_id: str, provider: str, category: str, scope_key: str | None = None) -> bool:
        stmt = delete(DestinationPreferenceRow).where(
            DestinationPreferenceRow.user_id == user_id,
            DestinationPreferenceRow.provider == provider,
            DestinationPreferenceRow.scope_key == (scope_key or ""),
            DestinationPreferenceRow.category == category,
        )
        with self._sessions.begin() as db:
            return db.execute(stmt).rowcount > 0
