from __future__ import annotations
from typing import Dict

from integrations.core.config import Settings
from integrations.providers.base import OAuthProvider
from integrations.providers.google import GoogleProvider
from integrations.providers.microsoft import MicrosoftProvider
from integrations.providers.slack import SlackProvider


def build_providers(cfg: Settings) -> Dict[str, OAuthProvider]:
    timeout = cfg.PROVIDER_TIMEOUT_SECONDS
    providers: list[OAuthProvider] = [
        MicrosoftProvider(cfg.MICROSOFT_CLIENT_ID, cfg.MICROSOFT_CLIENT_SECRET,
                          tenant=cfg.MICROSOFT_TENANT, timeout=timeout),
        SlackProvider(cfg.SLACK_CLIENT_ID, cfg.SLACK_CLIENT_SECRET, timeout=timeout),
        GoogleProvider(cfg.GOOGLE_CLIENT_ID, cfg.GOOGLE_CLIENT_SECRET, timeout=timeout),
    ]
    return {p.name: p for p in providers}
