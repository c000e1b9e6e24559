# model/settings.py
from __future__ import annotations
import asyncio
import logging
from typing import Dict, Iterable, Mapping, Callable, AsyncContextManager

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .db import Setting
from .. import config

logger = logging.getLogger(__name__)

Gated = Callable[[], AsyncContextManager[None]]

# key -> (default value, description)
DEFAULT_SETTINGS = {
    "store_name": (config.STORE_NAME, "Store name shown in header and title"),
    "website_logo": ("", "Logo URL, empty for none"),
    "contact_admin": ("https://wa.me/6282261169349",
                      "Main admin WhatsApp link"),
    "channel_link": ("https://whatsapp.com/channel/0029VbBKScNAInPfll7NHM0O",
                     "WhatsApp channel link"),
    "bot_group_link": (
        "https://chat.whatsapp.com/LvA30WKiFgB0t5yFjFmWsz?mode=hqrc",
        "Bot group link, sent to bot rental buyers"),
    "store_group_link": ("https://chat.whatsapp.com/BOdAG1wgHq4AHVftWUWyAj",
                         "Script update group link, sent to script buyers"),
    "telegram_link": ("https://t.me/IPINSHOP", "Telegram channel link"),
}

DEFAULT_CONFIG: Dict[str, str] = {
    k: v for k, (v, _) in DEFAULT_SETTINGS.items()
}


class SettingsProvider:
    def __init__(self, *, db: AsyncSession, gated: Gated) -> None:
        self.db = db
        self.gated = gated

    async def get_all(self) -> Dict[str, str]:
        """Current store settings merged over the defaults.

        Never raises: a failed lookup logs and returns the defaults.
        """
        settings = dict(DEFAULT_CONFIG)
        try:
            async with self.gated():
                async with self.db.begin():
                    rows = (await self.db.execute(
                        select(Setting)
                    )).scalars().all()
        except (SQLAlchemyError, OSError, asyncio.TimeoutError):
            logger.exception("settings lookup failed, using defaults")
            return settings
        for row in rows:
            if row.value:
                settings[row.key] = row.value
        return settings

    async def list_rows(self) -> list[dict]:
        async with self.gated():
            async with self.db.begin():
                rows = (await self.db.execute(
                    select(Setting).order_by(Setting.key)
                )).scalars().all()
        return [
            {"key": r.key, "value": r.value, "description": r.description}
            for r in rows
        ]

    async def save(self, items: Iterable[Mapping[str, str]]) -> int:
        n = 0
        async with self.gated():
            async with self.db.begin():
                for item in items:
                    key = item.get("key")
                    if not key:
                        continue
                    row = await self.db.get(Setting, key)
                    if row is None:
                        self.db.add(Setting(key=key, value=item.get("value")))
                    else:
                        row.value = item.get("value")
                    n += 1
        return n

    async def seed_defaults(self) -> None:
        async with self.gated():
            async with self.db.begin():
                for key, (value, description) in DEFAULT_SETTINGS.items():
                    if await self.db.get(Setting, key) is None:
                        self.db.add(Setting(
                            key=key, value=value, description=description
                        ))
