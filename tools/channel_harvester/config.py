"""Configuration and environment settings for the harvester."""

from __future__ import annotations

import os
from dataclasses import dataclass, field


@dataclass(frozen=True)
class DeviceProfile:
    """Viewport + user agent used to force the lightweight mobile feed."""
    name: str
    width: int
    height: int
    device_scale_factor: float
    user_agent: str
    is_mobile: bool = True
    has_touch: bool = True


DEVICES: dict[str, DeviceProfile] = {
    "iPhone": DeviceProfile(
        name="iPhone",
        width=390,
        height=844,
        device_scale_factor=3,
        user_agent=(
            "Mozilla/5.0 (iPhone; CPU iPhone OS 16_0 like Mac OS X) AppleWebKit/605.1.15 "
            "(KHTML, like Gecko) Version/16.0 Mobile/15E148 Safari/604.1"
        ),
    ),
    "Android": DeviceProfile(
        name="Android",
        width=412,
        height=915,
        device_scale_factor=2.625,
        user_agent=(
            "Mozilla/5.0 (Linux; Android 13) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/112.0.0.0 Mobile Safari/537.36"
        ),
    ),
}


def get_device(name: str) -> DeviceProfile:
    try:
        return DEVICES[name]
    except KeyError:
        raise ValueError(f"Unknown device profile {name!r} (choose from {', '.join(DEVICES)})") from None


@dataclass(frozen=True)
class ScrollPolicy:
    """Termination rules for one feed-loading mode."""
    stable_threshold: int
    max_attempts: int
    delay_min: float
    delay_max: float
    perturb: bool = False
    perturb_min_messages: int = 20
    perturb_after_stalls: int = 8
    perturb_top_pause: float = 1.5
    perturb_bottom_pause: float = 3.0
    progress_every: int = 30


FULL_POLICY = ScrollPolicy(
    stable_threshold=20,
    max_attempts=1000,
    delay_min=2.0,
    delay_max=4.0,
    perturb=True,
)

INCREMENTAL_POLICY = ScrollPolicy(
    stable_threshold=5,
    max_attempts=200,
    delay_min=2.0,
    delay_max=3.0,
)


@dataclass(frozen=True)
class BrowserConfig:
    feed_base: str = "https://t.me/s"
    headless: bool = True
    navigation_timeout: float = 120.0  # seconds
    settle_delay: float = 3.0
    accept_language: str = "en-US,en;q=0.9"

    @classmethod
    def from_env(cls) -> BrowserConfig:
        return cls(
            feed_base=os.getenv("HARVESTER_FEED_BASE", "https://t.me/s"),
            headless=os.getenv("HARVESTER_HEADLESS", "true").lower() == "true",
            navigation_timeout=float(os.getenv("HARVESTER_NAV_TIMEOUT", "120")),
        )


@dataclass(frozen=True)
class ProbeConfig:
    """Dimension / validity probes against the image host."""
    batch_size: int = 10
    batch_pause: float = 0.1
    timeout: float = 5.0
    user_agent: str = "channel-harvester/1.0"


@dataclass(frozen=True)
class CatalogConfig:
    path: str = "data/images.json"

    @classmethod
    def from_env(cls) -> CatalogConfig:
        return cls(path=os.getenv("CATALOG_PATH", "data/images.json"))


@dataclass(frozen=True)
class SyncConfig:
    channel: str = "PostSovietPhotography"
    device: str = "iPhone"
    incremental_limit: int = 500
    full_limit: int = 10000
    probe_dimensions: bool = True

    @classmethod
    def from_env(cls) -> SyncConfig:
        return cls(
            channel=os.getenv("HARVESTER_CHANNEL", "PostSovietPhotography"),
            device=os.getenv("HARVESTER_DEVICE", "iPhone"),
            incremental_limit=int(os.getenv("HARVESTER_INCREMENTAL_LIMIT", "500")),
            full_limit=int(os.getenv("HARVESTER_FULL_LIMIT", "10000")),
        )


@dataclass
class HarvesterConfig:
    browser: BrowserConfig = field(default_factory=BrowserConfig.from_env)
    catalog: CatalogConfig = field(default_factory=CatalogConfig.from_env)
    sync: SyncConfig = field(default_factory=SyncConfig.from_env)
    probe: ProbeConfig = field(default_factory=ProbeConfig)
    full_policy: ScrollPolicy = FULL_POLICY
    incremental_policy: ScrollPolicy = INCREMENTAL_POLICY
    dry_run: bool = False
