"""
Anti-Detection Engine.

Fingerprint spoofing expressed as an ordered list of page configuration
steps. Each step is an async function ``(page, options)`` applied once per
page, before navigation. Steps are independent and fail soft: a step that
raises is logged and the remaining steps still run.

Base steps:
- User agent (fixed or random from a list)
- Automation tells (navigator.webdriver, plugins, chrome.runtime, permissions)
- WebGL vendor/renderer
- Canvas read noise
- Hardware profile (CPU count, device memory)
- Desktop browser request headers
- Desktop viewport

Enhanced steps, applied on top of the base steps when escalating:
- Clock jitter (Date and performance.now)
- Screen geometry
- WebRTC local address masking
- Audio fingerprint noise
- Pre-existing analytics cookies
- Viewport jitter
"""

import json
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Sequence

from ..browser_config import DEFAULT_HEADERS, StealthOptions

logger = logging.getLogger(__name__)


StepFn = Callable[[Any, StealthOptions], Awaitable[None]]


@dataclass(frozen=True)
class StealthStep:
    """One page configuration step, optionally gated by a StealthOptions toggle."""
    name: str
    apply: StepFn
    toggle: Optional[str] = None

    def is_enabled(self, options: StealthOptions) -> bool:
        return self.toggle is None or bool(getattr(options, self.toggle))


@dataclass
class StepResult:
    """Outcome of one configuration step on one page."""
    name: str
    ok: bool
    skipped: bool = False
    error: Optional[str] = None


# --- Base steps ---

AUTOMATION_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', {
    get: () => false,
    configurable: true
});
Object.defineProperty(navigator, 'plugins', {
    get: () => {
        const plugins = [
            { name: 'Chrome PDF Plugin', filename: 'internal-pdf-viewer', description: 'Portable Document Format' },
            { name: 'Chrome PDF Viewer', filename: 'mhjfbmdgcfjbbpaeojofohoefgiehjai', description: '' },
            { name: 'Native Client', filename: 'internal-nacl-plugin', description: '' }
        ];
        plugins.item = (index) => plugins[index];
        plugins.namedItem = (name) => plugins.find(p => p.name === name);
        plugins.refresh = () => {};
        return plugins;
    },
    configurable: true
});
Object.defineProperty(navigator, 'languages', {
    get: () => ['en-US', 'en'],
    configurable: true
});
if (!window.chrome) {
    window.chrome = {};
}
if (!window.chrome.runtime) {
    window.chrome.runtime = {
        connect: function() {},
        sendMessage: function() {},
        onMessage: { addListener: function() {} },
        onConnect: { addListener: function() {} }
    };
}
if (window.navigator.permissions) {
    const originalQuery = window.navigator.permissions.query;
    window.navigator.permissions.query = (parameters) => (
        parameters.name === 'notifications' ?
            Promise.resolve({ state: Notification.permission }) :
            originalQuery(parameters)
    );
}
"""

USER_AGENT_SCRIPT = """
(() => {
    const userAgent = %s;
    Object.defineProperty(navigator, 'userAgent', { get: () => userAgent, configurable: true });
    Object.defineProperty(navigator, 'appVersion', {
        get: () => userAgent.replace(/^Mozilla\\//, ''),
        configurable: true
    });
})();
"""

WEBGL_SCRIPT = """
(() => {
    const vendor = %s;
    const renderer = %s;
    const patch = (proto) => {
        if (!proto) return;
        const getParameter = proto.getParameter;
        proto.getParameter = function(parameter) {
            // UNMASKED_VENDOR_WEBGL / UNMASKED_RENDERER_WEBGL
            if (parameter === 37445) return vendor;
            if (parameter === 37446) return renderer;
            return getParameter.apply(this, arguments);
        };
    };
    patch(window.WebGLRenderingContext && WebGLRenderingContext.prototype);
    patch(window.WebGL2RenderingContext && WebGL2RenderingContext.prototype);
})();
"""

CANVAS_NOISE_SCRIPT = """
(() => {
    const noisePixels = %d;
    const toDataURL = HTMLCanvasElement.prototype.toDataURL;
    HTMLCanvasElement.prototype.toDataURL = function() {
        if (this.width > 16 && this.height > 16) {
            const ctx = this.getContext('2d');
            if (ctx) {
                const x = Math.floor(Math.random() * this.width);
                const y = Math.floor(Math.random() * this.height);
                ctx.fillStyle = 'rgba(255, 255, 255, 0.1)';
                ctx.fillRect(x, y, 1, 1);
            }
        }
        return toDataURL.apply(this, arguments);
    };
    const getImageData = CanvasRenderingContext2D.prototype.getImageData;
    CanvasRenderingContext2D.prototype.getImageData = function() {
        const imageData = getImageData.apply(this, arguments);
        const pixels = imageData.data.length / 4;
        for (let i = 0; i < noisePixels && pixels > 0; i++) {
            const offset = Math.floor(Math.random() * pixels) * 4;
            imageData.data[offset] = Math.max(0, Math.min(255, imageData.data[offset] + (Math.random() < 0.5 ? -1 : 1)));
        }
        return imageData;
    };
})();
"""

HARDWARE_SCRIPT = """
Object.defineProperty(navigator, 'hardwareConcurrency', { get: () => %d, configurable: true });
Object.defineProperty(navigator, 'deviceMemory', { get: () => %d, configurable: true });
"""


async def set_user_agent(page, options: StealthOptions) -> None:
    await page.add_init_script(USER_AGENT_SCRIPT % json.dumps(options.get_user_agent()))


async def mask_automation(page, options: StealthOptions) -> None:
    await page.add_init_script(AUTOMATION_SCRIPT)


async def spoof_webgl(page, options: StealthOptions) -> None:
    await page.add_init_script(
        WEBGL_SCRIPT % (json.dumps(options.webgl_vendor), json.dumps(options.webgl_renderer))
    )


async def add_canvas_noise(page, options: StealthOptions) -> None:
    await page.add_init_script(CANVAS_NOISE_SCRIPT % options.canvas_noise_pixels)


async def spoof_hardware(page, options: StealthOptions) -> None:
    await page.add_init_script(HARDWARE_SCRIPT % (options.hardware_concurrency, options.device_memory))


async def normalize_headers(page, options: StealthOptions) -> None:
    headers = dict(DEFAULT_HEADERS)
    headers["User-Agent"] = options.get_user_agent()
    await page.set_extra_http_headers(headers)


async def normalize_viewport(page, options: StealthOptions) -> None:
    await page.set_viewport_size(options.viewport)


BASE_STEPS: tuple[StealthStep, ...] = (
    StealthStep("user_agent", set_user_agent),
    StealthStep("automation", mask_automation, toggle="mask_automation"),
    StealthStep("webgl", spoof_webgl, toggle="webgl_spoofing"),
    StealthStep("canvas", add_canvas_noise, toggle="canvas_noise"),
    StealthStep("hardware", spoof_hardware, toggle="hardware_spoofing"),
    StealthStep("headers", normalize_headers, toggle="normalize_headers"),
    StealthStep("viewport", normalize_viewport, toggle="normalize_viewport"),
)


# --- Enhanced steps ---

TIMING_SCRIPT = """
(() => {
    const maxJitter = %d;
    const RealDate = Date;
    const realNow = RealDate.now.bind(RealDate);
    const jitteredNow = () => realNow() + Math.floor(Math.random() * maxJitter);

    // Every clock read goes through jitteredNow: new Date(), Date() and Date.now()
    function JitteredDate(...args) {
        if (!new.target) {
            return new RealDate(jitteredNow()).toString();
        }
        return args.length === 0 ? new RealDate(jitteredNow()) : new RealDate(...args);
    }
    JitteredDate.prototype = RealDate.prototype;
    JitteredDate.now = jitteredNow;
    JitteredDate.parse = RealDate.parse;
    JitteredDate.UTC = RealDate.UTC;
    Object.defineProperty(JitteredDate, 'name', { value: 'Date' });
    Object.defineProperty(RealDate.prototype, 'constructor', {
        value: JitteredDate, writable: true, configurable: true
    });
    window.Date = JitteredDate;

    if (window.performance && performance.now) {
        const perfNow = performance.now.bind(performance);
        performance.now = () => perfNow() + Math.random() * (maxJitter / 100);
    }
})();
"""

SCREEN_SCRIPT = """
(() => {
    const props = { width: %d, height: %d, availWidth: %d, availHeight: %d, colorDepth: %d, pixelDepth: %d };
    for (const [key, value] of Object.entries(props)) {
        Object.defineProperty(window.screen, key, { get: () => value, configurable: true });
    }
})();
"""

WEBRTC_SCRIPT = """
(() => {
    const RealPeerConnection = window.RTCPeerConnection || window.webkitRTCPeerConnection;
    if (!RealPeerConnection) return;
    const mask = (sdp) => sdp ? sdp.replace(/IP4 \\d+\\.\\d+\\.\\d+\\.\\d+/g, 'IP4 0.0.0.0') : sdp;
    const createOffer = RealPeerConnection.prototype.createOffer;
    RealPeerConnection.prototype.createOffer = function() {
        return createOffer.apply(this, arguments).then((offer) => {
            if (offer && offer.sdp) {
                return new RTCSessionDescription({ type: offer.type, sdp: mask(offer.sdp) });
            }
            return offer;
        });
    };
    const addIceCandidate = RealPeerConnection.prototype.addIceCandidate;
    RealPeerConnection.prototype.addIceCandidate = function(candidate) {
        if (candidate && candidate.candidate) {
            candidate = new RTCIceCandidate({
                candidate: candidate.candidate.replace(/\\d+\\.\\d+\\.\\d+\\.\\d+/g, '0.0.0.0'),
                sdpMid: candidate.sdpMid,
                sdpMLineIndex: candidate.sdpMLineIndex
            });
        }
        return addIceCandidate.call(this, candidate, ...Array.from(arguments).slice(1));
    };
})();
"""

AUDIO_SCRIPT = """
(() => {
    const AudioCtx = window.AudioContext || window.webkitAudioContext;
    if (!AudioCtx || !window.AnalyserNode) return;
    const getFloatFrequencyData = AnalyserNode.prototype.getFloatFrequencyData;
    AnalyserNode.prototype.getFloatFrequencyData = function(array) {
        getFloatFrequencyData.apply(this, arguments);
        for (let i = 0; i < array.length; i += 100) {
            array[i] = array[i] + Math.random() * 0.0001;
        }
    };
    if (window.AudioBuffer) {
        const getChannelData = AudioBuffer.prototype.getChannelData;
        AudioBuffer.prototype.getChannelData = function() {
            const data = getChannelData.apply(this, arguments);
            for (let i = 0; i < data.length; i += 100) {
                data[i] = data[i] + Math.random() * 0.0000001;
            }
            return data;
        };
    }
})();
"""


async def jitter_clock(page, options: StealthOptions) -> None:
    await page.add_init_script(TIMING_SCRIPT % max(options.time_jitter_ms, 1))


async def spoof_screen(page, options: StealthOptions) -> None:
    await page.add_init_script(SCREEN_SCRIPT % (
        options.screen_width,
        options.screen_height,
        options.screen_width,
        options.screen_avail_height,
        options.color_depth,
        options.color_depth,
    ))


async def mask_webrtc(page, options: StealthOptions) -> None:
    await page.add_init_script(WEBRTC_SCRIPT)


async def add_audio_noise(page, options: StealthOptions) -> None:
    await page.add_init_script(AUDIO_SCRIPT)


def build_analytics_cookies(url: str) -> list[dict]:
    """Plausible pre-existing analytics cookies scoped to ``url``."""
    now = int(time.time())
    client_id = random.randint(1_000_000_000, 9_999_999_999)
    return [
        {"name": "_ga", "value": f"GA1.2.{client_id}.{now - random.randint(86400, 86400 * 90)}", "url": url},
        {"name": "_gid", "value": f"GA1.2.{random.randint(1_000_000_000, 9_999_999_999)}.{now}", "url": url},
        {"name": "visitor_id", "value": f"{random.getrandbits(64):016x}", "url": url},
    ]


async def seed_cookies(page, options: StealthOptions) -> None:
    url = options.cookie_url
    if not url:
        logger.debug("No cookie URL, skipping analytics cookies")
        return
    await page.context.add_cookies(build_analytics_cookies(url))


async def jitter_viewport(page, options: StealthOptions) -> None:
    await page.set_viewport_size({
        "width": options.viewport_width - random.randint(0, 100),
        "height": options.viewport_height - random.randint(0, 80),
    })


ENHANCED_STEPS: tuple[StealthStep, ...] = (
    StealthStep("timing", jitter_clock),
    StealthStep("screen", spoof_screen),
    StealthStep("webrtc", mask_webrtc),
    StealthStep("audio", add_audio_noise),
    StealthStep("cookies", seed_cookies),
    StealthStep("viewport_jitter", jitter_viewport, toggle="normalize_viewport"),
)


class AntiDetectionEngine:
    """
    Applies fingerprint configuration steps to a page.

    Usage:
        engine = AntiDetectionEngine(StealthOptions())
        options = engine.options.resolved()
        page = await session.new_page(**engine.context_options(options))
        await engine.apply(page, options)
    """

    def __init__(
        self,
        options: Optional[StealthOptions] = None,
        base_steps: Sequence[StealthStep] = BASE_STEPS,
        enhanced_steps: Sequence[StealthStep] = ENHANCED_STEPS,
    ):
        self.options = options or StealthOptions()
        self.base_steps = tuple(base_steps)
        self.enhanced_steps = tuple(enhanced_steps)

    def context_options(self, options: Optional[StealthOptions] = None) -> dict:
        """Browser context options consistent with the page-level spoofing."""
        options = options or self.options
        context = {
            "user_agent": options.get_user_agent(),
            "locale": "en-US",
            "ignore_https_errors": True,
        }
        if options.normalize_viewport:
            context["viewport"] = options.viewport
        if options.normalize_headers:
            context["extra_http_headers"] = dict(DEFAULT_HEADERS)
        return context

    async def apply(self, page, options: Optional[StealthOptions] = None) -> list[StepResult]:
        """
        Run the base steps on a page. Never raises.

        Returns:
            One StepResult per step, in order
        """
        options = (options or self.options).resolved()
        return await self._run(page, options, self.base_steps)

    async def apply_enhanced(
        self,
        page,
        options: Optional[StealthOptions] = None,
        url: Optional[str] = None,
    ) -> list[StepResult]:
        """
        Run the base steps, then the enhanced steps. Never raises.

        Args:
            page: Playwright page, before navigation
            options: Stealth options (defaults to the engine's)
            url: Target URL the analytics cookies are scoped to

        Returns:
            One StepResult per step, in order
        """
        options = (options or self.options).resolved()
        if url:
            options = options.model_copy(update={"cookie_url": url})
        return await self._run(page, options, self.base_steps + self.enhanced_steps)

    async def _run(self, page, options: StealthOptions, steps: Sequence[StealthStep]) -> list[StepResult]:
        results = []
        for step in steps:
            if not step.is_enabled(options):
                results.append(StepResult(step.name, ok=True, skipped=True))
                continue
            try:
                await step.apply(page, options)
                results.append(StepResult(step.name, ok=True))
            except Exception as e:
                logger.warning(f"Anti-detection step '{step.name}' failed: {e}")
                results.append(StepResult(step.name, ok=False, error=str(e) or type(e).__name__))

        failed = [r.name for r in results if not r.ok]
        logger.debug(f"Applied {len(results) - len(failed)}/{len(results)} anti-detection steps (failed: {failed})")
        return results


async def verify_stealth(page) -> dict:
    """
    Verify that stealth measures are working on a loaded page.

    Checks for:
    - navigator.webdriver is not true
    - navigator.plugins has entries
    - window.chrome.runtime exists
    - navigator.languages is non-empty

    Args:
        page: Playwright page

    Returns:
        Dict with verification results
    """
    checks = {
        "webdriver_hidden": "navigator.webdriver !== true",
        "plugins_non_empty": "navigator.plugins.length > 0",
        "chrome_runtime_exists": "typeof window.chrome !== 'undefined' && typeof window.chrome.runtime !== 'undefined'",
        "languages_set": "Array.isArray(navigator.languages) && navigator.languages.length > 0",
    }

    results = {}
    for name, script in checks.items():
        try:
            results[name] = await page.evaluate(script)
        except Exception as e:
            results[name] = f"Error: {e}"

    all_passed = all(v is True for v in results.values())
    results["all_passed"] = all_passed

    if all_passed:
        logger.info("All stealth verifications passed")
    else:
        logger.warning(f"Stealth verification issues: {results}")

    return results
