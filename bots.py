"""Crawler detection and the render policy decision."""

from __future__ import annotations

import re

from config import RenderPolicy

BOT_USER_AGENTS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        # specific names
        r"googlebot",
        r"bingbot",
        r"slurp",
        r"duckduckbot",
        r"baiduspider",
        r"yandexbot",
        r"sogou",
        r"exabot",
        r"facebot",
        r"ia_archiver",
        r"twitterbot",
        r"linkedinbot",
        r"redditbot",
        r"applebot",
        r"discordbot",
        r"telegrambot",
        r"whatsapp",
        r"pingdom",
        r"SemrushBot",
        r"DotBot",
        r"BLEXBot",
        r"Barkrowler",
        # general names
        r"bot|crawler|spider|robot|crawling",
    )
)


def is_bot(user_agent: str | None) -> bool:
    if not user_agent:
        return False
    return any(pattern.search(user_agent) for pattern in BOT_USER_AGENTS)


def should_render(policy: RenderPolicy, user_agent: str | None) -> bool:
    if policy is RenderPolicy.ALL:
        return True
    if policy is RenderPolicy.BOTS_ONLY:
        return is_bot(user_agent)
    return False
