"""
Human-like browsing behavior for loaded pages.

Runs once per page, after content is available and before extraction:
- Reading-style scrolling proportional to page length
- Smooth mouse movement across a few random points
- Occasional click on a harmless interactive element (tab, accordion, button)

Every sub-step fails soft. A broken page, a detached frame or a blocked API
is logged and the remaining steps still run; the simulator never raises.
"""

import asyncio
import logging
import math
import random
import re
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


@dataclass
class BehaviorConfig:
    """Configuration for human behavior simulation."""

    # Reading pause between scroll steps, and the final settle pause
    min_delay_ms: int = 300
    max_delay_ms: int = 1200
    scroll_delay_ms: int = 500  # Pause after the re-reading scroll back

    # Scrolling
    min_scroll_steps: int = 2
    max_scroll_steps: int = 8
    min_scroll_fraction: float = 0.1  # Of the remaining distance
    max_scroll_fraction: float = 0.4
    scroll_back_probability: float = 0.5
    min_scroll_back_px: int = 200
    max_scroll_back_px: int = 500

    # Mouse movement
    min_mouse_points: int = 2
    max_mouse_points: int = 4
    min_mouse_steps: int = 10
    max_mouse_steps: int = 24
    min_mouse_pause_ms: int = 50
    max_mouse_pause_ms: int = 250

    # Incidental interaction
    interaction_probability: float = 0.3
    max_interactive_elements: int = 20
    min_settle_ms: int = 500
    max_settle_ms: int = 1500

    # Skip all simulation when True
    fast_mode: bool = False


@dataclass
class PageDimensions:
    """Viewport and document size as reported by the page."""
    width: int
    height: int
    scroll_height: int


@dataclass
class SimulationReport:
    """What the simulator actually did on one page."""
    scroll_distances: list[int] = field(default_factory=list)
    scrolled_back: bool = False
    mouse_moves: int = 0
    interactive_candidates: int = 0
    clicked: Optional[str] = None
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


# Text on controls that could log in, submit forms or navigate away
EXCLUDED_CONTROL_TEXT = re.compile(r"sign|log\s?in|submit", re.IGNORECASE)

DIMENSIONS_SCRIPT = """
() => ({
    width: document.documentElement.clientWidth,
    height: document.documentElement.clientHeight,
    scrollHeight: document.documentElement.scrollHeight
})
"""

SCROLL_SCRIPT = "(distance) => window.scrollBy({ top: distance, behavior: 'smooth' })"

INTERACTIVE_ELEMENTS_SCRIPT = """
(limit) => {
    const isVisible = (el) => {
        const style = window.getComputedStyle(el);
        return style.display !== 'none' &&
               style.visibility !== 'hidden' &&
               style.opacity !== '0' &&
               el.offsetWidth > 0 &&
               el.offsetHeight > 0;
    };
    const candidates = [
        ...document.querySelectorAll('button:not([type="submit"]):not([form]), [role="button"]'),
        ...document.querySelectorAll('[role="tab"], [aria-expanded], .accordion-header, .tab')
    ];
    const seen = new Set();
    const elements = [];
    for (const el of candidates) {
        if (seen.has(el) || !isVisible(el)) continue;
        seen.add(el);
        const text = (el.textContent || '').trim().toLowerCase();
        if (text.includes('sign') || text.includes('login') || text.includes('submit')) continue;
        const rect = el.getBoundingClientRect();
        elements.push({
            x: rect.left + rect.width / 2,
            y: rect.top + rect.height / 2,
            width: rect.width,
            height: rect.height,
            tagName: el.tagName,
            text: text.substring(0, 20)
        });
        if (elements.length >= limit) break;
    }
    return elements;
}
"""


class HumanBehaviorSimulator:
    """
    Simulates a person skimming a page.

    Usage:
        simulator = HumanBehaviorSimulator()
        report = await simulator.simulate(page)
    """

    def __init__(self, config: Optional[BehaviorConfig] = None, rng: Optional[random.Random] = None):
        """
        Initialize the simulator.

        Args:
            config: Configuration options. Uses defaults if not provided.
            rng: Random source, injectable for deterministic runs.
        """
        self.config = config or BehaviorConfig()
        self._rng = rng or random.Random()

    async def simulate(self, page, options: Optional[BehaviorConfig] = None) -> SimulationReport:
        """
        Run scrolling, mouse movement and incidental interaction on a page.

        Args:
            page: Playwright page with content loaded
            options: Per-call configuration overriding the simulator's own

        Returns:
            SimulationReport describing the performed actions and any
            swallowed errors
        """
        config = options or self.config
        report = SimulationReport()

        if config.fast_mode:
            return report

        dimensions = await self._measure(page, report)

        if dimensions is not None:
            await self._soft(report, "scroll", lambda: self._simulate_scrolling(page, dimensions, config, report))
            await self._soft(report, "mouse", lambda: self._simulate_mouse(page, dimensions, config, report))
        await self._soft(report, "interaction", lambda: self._simulate_interaction(page, config, report))
        await self._soft(report, "pause", lambda: self._pause(config.min_delay_ms, config.max_delay_ms))

        logger.debug(
            f"Human simulation: {len(report.scroll_distances)} scrolls, "
            f"{report.mouse_moves} mouse moves, clicked={report.clicked!r}, "
            f"errors={len(report.errors)}"
        )
        return report

    async def _soft(self, report: SimulationReport, name: str, step: Callable[[], Awaitable]) -> None:
        try:
            await step()
        except Exception as e:
            logger.warning(f"Human simulation step '{name}' failed: {e}")
            report.errors.append(f"{name}: {e}")

    async def _measure(self, page, report: SimulationReport) -> Optional[PageDimensions]:
        try:
            raw = await page.evaluate(DIMENSIONS_SCRIPT)
            return PageDimensions(
                width=int(raw["width"]),
                height=int(raw["height"]),
                scroll_height=int(raw["scrollHeight"]),
            )
        except Exception as e:
            logger.warning(f"Could not measure page, using viewport: {e}")
            report.errors.append(f"measure: {e}")

        viewport = getattr(page, "viewport_size", None)
        if isinstance(viewport, dict) and viewport.get("width") and viewport.get("height"):
            return PageDimensions(viewport["width"], viewport["height"], viewport["height"])
        return None

    def plan_scroll(self, dimensions: PageDimensions, config: Optional[BehaviorConfig] = None) -> list[int]:
        """
        Compute scroll distances for a page.

        Nothing to scroll when the document fits the viewport. Otherwise the
        step count follows the scroll-to-viewport ratio, bounded by
        [min_scroll_steps, max_scroll_steps]; each step takes a random slice
        of the remaining distance and the last one reaches the bottom.

        Args:
            dimensions: Measured page dimensions
            config: Configuration to use (defaults to the simulator's)

        Returns:
            List of positive pixel distances summing to the scrollable height
        """
        config = config or self.config
        if dimensions.height <= 0 or dimensions.scroll_height <= dimensions.height:
            return []

        ratio = dimensions.scroll_height / dimensions.height
        steps = math.floor(ratio * (0.5 + self._rng.random() * 0.5))
        steps = min(max(config.min_scroll_steps, steps), config.max_scroll_steps)

        remaining = dimensions.scroll_height - dimensions.height
        distances = []
        for _ in range(steps - 1):
            fraction = self._rng.uniform(config.min_scroll_fraction, config.max_scroll_fraction)
            distance = int(remaining * fraction)
            if distance <= 0:
                continue
            distances.append(distance)
            remaining -= distance

        if remaining > 0:
            distances.append(remaining)
        return distances

    async def _simulate_scrolling(self, page, dimensions: PageDimensions, config: BehaviorConfig,
                                  report: SimulationReport) -> None:
        for distance in self.plan_scroll(dimensions, config):
            await page.evaluate(SCROLL_SCRIPT, distance)
            report.scroll_distances.append(distance)
            # Pause as if reading
            await self._pause(config.min_delay_ms, config.max_delay_ms)

        if report.scroll_distances and self._rng.random() < config.scroll_back_probability:
            back = -self._rng.randint(config.min_scroll_back_px, config.max_scroll_back_px)
            await page.evaluate(SCROLL_SCRIPT, back)
            report.scrolled_back = True
            await asyncio.sleep(config.scroll_delay_ms / 1000.0)

    async def _simulate_mouse(self, page, dimensions: PageDimensions, config: BehaviorConfig,
                              report: SimulationReport) -> None:
        points = self._rng.randint(config.min_mouse_points, config.max_mouse_points)
        max_x = max(dimensions.width - 50, 51)
        # Stay inside the first screenful
        max_y = max(min(dimensions.height, 800) - 50, 51)

        for _ in range(points):
            x = self._rng.uniform(50, max_x)
            y = self._rng.uniform(50, max_y)
            steps = self._rng.randint(config.min_mouse_steps, config.max_mouse_steps)
            await page.mouse.move(x, y, steps=steps)
            report.mouse_moves += 1
            await self._pause(config.min_mouse_pause_ms, config.max_mouse_pause_ms)

    async def _simulate_interaction(self, page, config: BehaviorConfig, report: SimulationReport) -> None:
        raw = await page.evaluate(INTERACTIVE_ELEMENTS_SCRIPT, config.max_interactive_elements)
        elements = [
            el for el in (raw or [])
            if not EXCLUDED_CONTROL_TEXT.search(el.get("text") or "")
        ][:config.max_interactive_elements]
        report.interactive_candidates = len(elements)

        if not elements or self._rng.random() >= config.interaction_probability:
            return

        element = self._rng.choice(elements)
        await page.mouse.move(element["x"], element["y"], steps=10)
        await self._pause(200, 500)
        await page.mouse.click(element["x"], element["y"])
        report.clicked = element.get("text") or element.get("tagName", "")
        # Wait for animations or expanded content
        await self._pause(config.min_settle_ms, config.max_settle_ms)

    async def _pause(self, min_ms: int, max_ms: int) -> float:
        delay = self._rng.uniform(min_ms, max_ms) / 1000.0
        await asyncio.sleep(delay)
        return delay


def create_human_simulator(fast_mode: bool = False, seed: Optional[int] = None) -> HumanBehaviorSimulator:
    """
    Create a configured HumanBehaviorSimulator.

    Args:
        fast_mode: Skip all simulation (for testing)
        seed: Seed for the random source, for reproducible runs

    Returns:
        Configured HumanBehaviorSimulator instance
    """
    rng = random.Random(seed) if seed is not None else None
    return HumanBehaviorSimulator(BehaviorConfig(fast_mode=fast_mode), rng=rng)
