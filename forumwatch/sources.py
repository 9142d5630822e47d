"""
Source presets.

The durable store is seeded from this list once at startup (or from the JSON
file named by ``SOURCES_FILE``, a list of objects with the SourceConfig fields).
Ids are assigned by the database; presets are keyed by URL.
"""

import json
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

from forumwatch.config import settings
from forumwatch.utils.logging import get_logger

logger = get_logger(__name__)


class SourceConfig(BaseModel):
    name: str
    url: str
    tier: int = Field(default=1, ge=1, le=3)
    category: str = "general"
    logo_url: str | None = None

    @field_validator("url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        value = value.strip()
        if not value.startswith(("http://", "https://")):
            raise ValueError("source url must be absolute (http/https)")
        return value.rstrip("/")


# (name, url, tier, category)
_PRESETS: list[tuple[str, str, int, str]] = [
    ("Arbitrum", "https://forum.arbitrum.foundation", 1, "crypto-governance"),
    ("Optimism", "https://gov.optimism.io", 1, "crypto-governance"),
    ("zkSync Era", "https://forum.zknation.io", 1, "crypto-governance"),
    ("Polygon", "https://forum.polygon.technology", 1, "crypto-governance"),
    ("Starknet", "https://community.starknet.io", 1, "crypto-governance"),
    ("Scroll", "https://forum.scroll.io", 1, "crypto-governance"),
    ("Ethereum Magicians", "https://ethereum-magicians.org", 1, "crypto-governance"),
    ("Ethereum Research", "https://ethresear.ch", 1, "crypto-governance"),
    ("Cosmos Hub", "https://forum.cosmos.network", 1, "crypto-governance"),
    ("ENS", "https://discuss.ens.domains", 1, "crypto-governance"),
    ("Gitcoin", "https://gov.gitcoin.co", 1, "crypto-governance"),
    ("CoW Protocol", "https://forum.cow.fi", 1, "crypto-governance"),
    ("Aave", "https://governance.aave.com", 1, "crypto-defi"),
    ("Compound", "https://www.comp.xyz", 1, "crypto-defi"),
    ("Sky (MakerDAO)", "https://forum.sky.money", 1, "crypto-defi"),
    ("Mantle", "https://forum.mantle.xyz", 2, "crypto-governance"),
    ("Linea", "https://community.linea.build", 2, "crypto-governance"),
    ("Aptos", "https://forum.aptosfoundation.org", 2, "crypto-governance"),
    ("The Graph", "https://forum.thegraph.com", 2, "crypto-governance"),
    ("SafeDAO", "https://forum.safe.global", 2, "crypto-governance"),
    ("Livepeer", "https://forum.livepeer.org", 2, "crypto-governance"),
    ("Morpho", "https://forum.morpho.org", 2, "crypto-defi"),
    ("Euler Finance", "https://forum.euler.finance", 2, "crypto-defi"),
    ("Sui", "https://forums.sui.io", 3, "crypto-governance"),
    ("Tron", "https://forum.trondao.org", 3, "crypto-governance"),
]


def builtin_sources() -> list[SourceConfig]:
    return [
        SourceConfig(name=name, url=url, tier=tier, category=category)
        for name, url, tier, category in _PRESETS
    ]


def load_source_configs(path: str | None = None) -> list[SourceConfig]:
    """
    Return the configured sources.

    Raises ValueError if an explicitly configured file is unreadable or invalid.
    """
    path = path if path is not None else settings.sources_file
    if not path:
        return builtin_sources()

    file_path = Path(path)
    try:
        raw = json.loads(file_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ValueError(f"Cannot read sources file {file_path}: {exc}") from exc

    if not isinstance(raw, list):
        raise ValueError(f"Sources file {file_path} must contain a JSON list")

    configs = [SourceConfig.model_validate(item) for item in raw]
    logger.info("sources_loaded", path=str(file_path), count=len(configs))
    return configs
