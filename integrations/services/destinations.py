"""
Destination resolution for outbound notifications.

The chain is an ordered list of small resolver functions; the first one that
returns a target wins:

    explicit target
    -> per-entity (scope key) override for the category
    -> user's category preference
    -> user's default destination
    -> system-wide default
    -> the connection's own install-time default (e.g. Slack incoming-webhook channel)

Nothing is resolved at configuration time; changing preferences takes effect on
the next dispatch.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, Mapping, NamedTuple, Optional, Sequence

from integrations.domain import Destination, DestinationSource
from integrations.services.credential_store import CorruptCredentialError, CredentialStore
from integrations.services.preferences import DestinationPreferences, PreferenceStore

logger = logging.getLogger(__name__)


class NotificationCategory(str, Enum):
    TASK_REMINDER = "task_reminder"
    MEETING_REMINDER = "meeting_reminder"
    INVOICE_DUE = "invoice_due"
    LEAD_DETECTED = "lead_detected"
    DAILY_SUMMARY = "daily_summary"
    EXPENSE_ALERT = "expense_alert"


# a category without a preference of its own borrows this one's, at the same level
CATEGORY_FALLBACKS = {
    NotificationCategory.EXPENSE_ALERT.value: NotificationCategory.DAILY_SUMMARY.value,
}


class ResolutionContext(NamedTuple):
    user_id: str
    provider: str
    category: str
    explicit_target: Optional[str]
    scope_key: Optional[str]
    preferences: DestinationPreferences


Resolver = Callable[[ResolutionContext], Optional[str]]


def _lookup(table: Mapping[str, str], category: str) -> Optional[str]:
    hit = table.get(category)
    if not hit and category in CATEGORY_FALLBACKS:
        hit = table.get(CATEGORY_FALLBACKS[category])
    return hit or None


def explicit_target(ctx: ResolutionContext) -> Optional[str]:
    return ctx.explicit_target or None


def scoped_override(ctx: ResolutionContext) -> Optional[str]:
    if not ctx.scope_key:
        return None
    return _lookup(ctx.preferences.scoped_for(ctx.scope_key), ctx.category)


def category_preference(ctx: ResolutionContext) -> Optional[str]:
    return _lookup(ctx.preferences.categories, ctx.category)


def user_default(ctx: ResolutionContext) -> Optional[str]:
    return ctx.preferences.default or None


class DestinationResolver:
    def __init__(
        self,
        preferences: PreferenceStore,
        credentials: CredentialStore,
        system_defaults: Mapping[str, str] | None = None,
    ):
        self._preferences = preferences
        self._credentials = credentials
        self._system_defaults = dict(system_defaults or {})
        self.chain: Sequence[tuple[DestinationSource, Resolver]] = (
            (DestinationSource.EXPLICIT, explicit_target),
            (DestinationSource.SCOPED_OVERRIDE, scoped_override),
            (DestinationSource.CATEGORY_PREFERENCE, category_preference),
            (DestinationSource.USER_DEFAULT, user_default),
            (DestinationSource.SYSTEM_DEFAULT, self._system_default),
            (DestinationSource.CONNECTION_DEFAULT, self._connection_default),
        )

    def _system_default(self, ctx: ResolutionContext) -> Optional[str]:
        return self._system_defaults.get(ctx.provider) or None

    def _connection_default(self, ctx: ResolutionContext) -> Optional[str]:
        try:
            cred = self._credentials.get(ctx.user_id, ctx.provider, ctx.scope_key)
        except CorruptCredentialError:
            return None
        return cred.default_destination if cred else None

    def resolve(
        self,
        user_id: str,
        provider: str,
        category: str,
        explicit: Optional[str] = None,
        scope_key: Optional[str] = None,
    ) -> Optional[Destination]:
        """First match wins. None means no destination is configured anywhere."""
        category = category.value if isinstance(category, Enum) else category
        ctx = ResolutionContext(
            user_id=user_id,
            provider=provider,
            category=category,
            explicit_target=explicit,
            scope_key=scope_key,
            preferences=self._preferences.get_preferences(user_id, provider),
        )
        for source, resolver in self.chain:
            target = resolver(ctx)
            if target:
                logger.debug(f"{provider}:{user_id} {category} -> {source.value}",
                             extra={"destination_source": source.value})
                return Destination(target=target, source=source)
        logger.info(f"no {provider} destination for {category} (user {user_id})",
                    extra={"category": category, "provider": provider})
        return None
