"""Feed loading – drive a headless browser until the lazy feed stops growing.

The channel's web feed has no total-count signal and can plateau while it
is still fetching, so convergence is decided from a run of consecutive
(message count, scroll height) samples rather than a single reading.
``ConvergenceTracker`` holds that state machine; ``converge`` drives it
against any ``FeedPage`` (a Playwright page in production, a fake in tests).
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Protocol

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page, async_playwright

from .config import FULL_POLICY, INCREMENTAL_POLICY, BrowserConfig, DeviceProfile, ScrollPolicy
from .extractor import MESSAGE_SELECTOR

logger = logging.getLogger("harvester.loader")

Sleep = Callable[[float], Awaitable[None]]


class FeedSessionError(RuntimeError):
    """Browser launch, navigation or page evaluation failed."""


class ScrollState(Enum):
    SCROLLING = "scrolling"
    VERIFYING = "verifying"
    PERTURBING = "perturbing"
    CONVERGED = "converged"
    ABORTED_LIMIT = "aborted_limit"
    ABORTED_CAP = "aborted_cap"

    @property
    def terminal(self) -> bool:
        return self in (ScrollState.CONVERGED, ScrollState.ABORTED_LIMIT, ScrollState.ABORTED_CAP)


class ConvergenceTracker:
    """Consumes (message count, scroll height) samples and decides when to stop."""

    def __init__(self, policy: ScrollPolicy, limit: int) -> None:
        self.policy = policy
        self.limit = limit
        self.attempts = 0
        self.stable = 0
        self.stalled = 0
        self.last_count = 0
        self.last_height = 0
        self.state = ScrollState.SCROLLING

    def _set(self, state: ScrollState) -> ScrollState:
        self.state = state
        return state

    def _after_step(self, state: ScrollState) -> ScrollState:
        if self.last_count >= self.limit:
            logger.info("Reached limit of %d messages", self.limit)
            return self._set(ScrollState.ABORTED_LIMIT)
        if self.attempts >= self.policy.max_attempts:
            logger.warning("Gave up after %d scroll attempts with %d messages", self.attempts, self.last_count)
            return self._set(ScrollState.ABORTED_CAP)
        return self._set(state)

    def observe(self, count: int, height: int) -> ScrollState:
        if self.state.terminal:
            raise RuntimeError(f"Tracker already finished ({self.state.value})")
        stalled = count == self.last_count and height == self.last_height
        if stalled:
            self.stable += 1
            self.stalled += 1
        else:
            if count > self.last_count:
                logger.info("Loaded %d messages... (progress: +%d)", count, count - self.last_count)
            self.stable = 0
            self.stalled = 0
        self.last_count = count
        self.last_height = height
        self.attempts += 1

        if stalled:
            if self.policy.perturb and (
                count >= self.policy.perturb_min_messages or self.stalled >= self.policy.perturb_after_stalls
            ):
                return self._set(ScrollState.PERTURBING)
            if self.stable >= self.policy.stable_threshold:
                logger.info("Stable at %d messages after %d attempts", count, self.stable)
                return self._set(ScrollState.CONVERGED)
            return self._after_step(ScrollState.VERIFYING)
        return self._after_step(ScrollState.SCROLLING)

    def resolve_perturbation(self, count: int) -> ScrollState:
        """Feed the re-count taken after the top/bottom jump."""
        if self.state is not ScrollState.PERTURBING:
            raise RuntimeError("No perturbation in progress")
        if count == self.last_count:
            logger.info("Final count: %d messages (no more messages to load)", count)
            return self._set(ScrollState.CONVERGED)
        self.stable = 0
        self.stalled = 0
        self.last_count = count
        return self._after_step(ScrollState.SCROLLING)


class FeedPage(Protocol):
    async def advance(self, incremental: bool) -> int: ...
    async def count_messages(self) -> int: ...
    async def scroll_to_top(self) -> None: ...
    async def scroll_to_bottom(self) -> None: ...
    async def content(self) -> str: ...


_ADVANCE_JS = """
(opts) => {
  const messages = document.querySelectorAll(opts.selector);
  const last = messages[messages.length - 1];
  if (last) {
    last.scrollIntoView({ behavior: 'smooth', block: opts.block });
  } else if (opts.incremental) {
    window.scrollBy(0, document.body.scrollHeight);
  } else {
    window.scrollBy(0, window.innerHeight * 0.8);
  }
  return document.body.scrollHeight;
}
"""

_COUNT_JS = "(selector) => document.querySelectorAll(selector).length"


class PlaywrightFeedPage:
    """FeedPage backed by a live Playwright page."""

    def __init__(self, page: Page) -> None:
        self.page = page

    async def advance(self, incremental: bool) -> int:
        opts = {
            "selector": MESSAGE_SELECTOR,
            "block": "end" if incremental else "center",
            "incremental": incremental,
        }
        return int(await self.page.evaluate(_ADVANCE_JS, opts))

    async def count_messages(self) -> int:
        return int(await self.page.evaluate(_COUNT_JS, MESSAGE_SELECTOR))

    async def scroll_to_top(self) -> None:
        await self.page.evaluate("() => window.scrollTo(0, 0)")

    async def scroll_to_bottom(self) -> None:
        await self.page.evaluate("() => window.scrollTo(0, document.body.scrollHeight)")

    async def content(self) -> str:
        return await self.page.content()


async def converge(
    feed: FeedPage,
    policy: ScrollPolicy,
    limit: int,
    *,
    incremental: bool,
    sleep: Sleep = asyncio.sleep,
    rng: random.Random | None = None,
) -> ConvergenceTracker:
    """Scroll *feed* until the tracker reaches a terminal state."""
    rng = rng or random.Random()
    tracker = ConvergenceTracker(policy, limit)
    while True:
        height = await feed.advance(incremental)
        await sleep(rng.uniform(policy.delay_min, policy.delay_max))
        count = await feed.count_messages()
        state = tracker.observe(count, height)

        if state is ScrollState.PERTURBING:
            logger.info("Loaded %d messages, trying alternative scroll...", count)
            await feed.scroll_to_top()
            await sleep(policy.perturb_top_pause)
            await feed.scroll_to_bottom()
            await sleep(policy.perturb_bottom_pause)
            state = tracker.resolve_perturbation(await feed.count_messages())

        if state.terminal:
            return tracker
        if tracker.attempts % policy.progress_every == 0:
            logger.info("Progress: %d scroll attempts, %d messages loaded", tracker.attempts, tracker.last_count)


def normalize_channel(value: str) -> str:
    """Accept ``name``, ``@name``, ``t.me/name`` or ``https://t.me/s/name?x``."""
    s = (value or "").strip()
    if "t.me/" in s:
        s = s.split("t.me/")[-1]
    s = s.split("?")[0].strip().strip("/")
    if s.startswith("s/"):
        s = s[2:]
    s = s.lstrip("@")
    if not s:
        raise ValueError(f"Invalid channel identifier: {value!r}")
    return s


@dataclass
class LoadedFeed:
    html: str
    message_count: int
    attempts: int
    state: ScrollState


class FeedLoader:
    """One browser session per load; the session is always closed."""

    def __init__(
        self,
        cfg: BrowserConfig | None = None,
        *,
        full_policy: ScrollPolicy = FULL_POLICY,
        incremental_policy: ScrollPolicy = INCREMENTAL_POLICY,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.cfg = cfg or BrowserConfig.from_env()
        self.full_policy = full_policy
        self.incremental_policy = incremental_policy
        self._sleep = sleep

    def feed_url(self, channel: str) -> str:
        return f"{self.cfg.feed_base.rstrip('/')}/{normalize_channel(channel)}"

    async def load(self, channel: str, limit: int, device: DeviceProfile, *, incremental: bool) -> LoadedFeed:
        url = self.feed_url(channel)
        policy = self.incremental_policy if incremental else self.full_policy
        logger.info(
            "%s sync: loading %s with %s emulation",
            "Incremental" if incremental else "Full",
            url,
            device.name,
        )
        try:
            async with async_playwright() as pw:
                browser = await pw.chromium.launch(
                    headless=self.cfg.headless,
                    args=["--no-sandbox", "--disable-setuid-sandbox"],
                )
                try:
                    context = await browser.new_context(
                        viewport={"width": device.width, "height": device.height},
                        device_scale_factor=device.device_scale_factor,
                        is_mobile=device.is_mobile,
                        has_touch=device.has_touch,
                        user_agent=device.user_agent,
                        extra_http_headers={
                            "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                            "Accept-Language": self.cfg.accept_language,
                        },
                    )
                    page = await context.new_page()
                    await page.goto(url, wait_until="domcontentloaded", timeout=self.cfg.navigation_timeout * 1000)
                    await self._sleep(self.cfg.settle_delay)

                    feed = PlaywrightFeedPage(page)
                    tracker = await converge(feed, policy, limit, incremental=incremental, sleep=self._sleep)
                    html = await feed.content()
                finally:
                    await browser.close()
        except PlaywrightError as exc:
            raise FeedSessionError(f"Browser session for {url} failed: {exc}") from exc

        logger.info(
            "Finished scrolling (%s): %d messages after %d attempts",
            tracker.state.value,
            tracker.last_count,
            tracker.attempts,
        )
        return LoadedFeed(html=html, message_count=tracker.last_count, attempts=tracker.attempts, state=tracker.state)
