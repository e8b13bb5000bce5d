"""
Navigation gate for the embedded browser surface.

Payment pages inside the surface try to open vendor payment apps through
``upi://``-style links or Android ``intent://`` wrappers. Those are handed to
the OS URL opener instead of being loaded as pages.
"""
import json
import logging
import re
import webbrowser
from typing import Callable, Iterable, List, Optional
from urllib.parse import urlsplit

from pydantic import ValidationError

from common.schemas import BridgeMessage, DeepLinkEvent, NavigationDecision

logger = logging.getLogger(__name__)

INTENT_PREFIX = "intent://"
INTENT_MARKER = "#Intent;"

VENDOR_SCHEMES = ("upi", "phonepe", "paytm", "gpay", "googlepay", "bhim", "whatsapp", "tez")
WEB_SCHEMES = ("http", "https", "data", "about", "file")

# Query-preserving alternates tried when the unwrapped intent cannot be opened
ALTERNATE_PAY_TEMPLATES = (
    "phonepe://upi/pay?{query}",
    "gpay://upi/pay?{query}",
    "paytm://upi/pay?{query}",
    "upi://pay?{query}",
)
GENERIC_VENDOR_ROOTS = ("phonepe://", "gpay://", "paytm://", "upi://")

HOME_MESSAGES = ("goto-home", "goToHome")

_SCHEME_RE = re.compile(r"^([a-zA-Z][a-zA-Z0-9+.\-]*):")

# Substrings of a loaded page URL, checked in order
NAVIGATION_HINTS = (
    ("success", ("/success", "payment-success", "success", "completed")),
    ("cancelled", ("/cancel", "payment-cancelled", "cancel")),
    ("failed", ("/fail", "payment-failed", "failed", "failure")),
)

Launcher = Callable[[str], Optional[bool]]

def url_scheme(url: str) -> str:
    match = _SCHEME_RE.match(url.strip())
    return match.group(1).lower() if match else ""

def parse_intent(url: str) -> DeepLinkEvent:
    """Unwrap ``intent://path#Intent;scheme=s;package=p;end`` into ``s://path``.

    A first path segment equal to the scheme is dropped, so
    ``intent://upi/pay?pa=x#Intent;scheme=upi;...`` becomes ``upi://pay?pa=x``.
    The event has no ``unwrapped_url`` when the wrapper is malformed.
    """
    event = DeepLinkEvent(raw_url=url, scheme="intent", is_intent_wrapper=True)
    if not url.lower().startswith(INTENT_PREFIX) or INTENT_MARKER not in url:
        return event

    body, _, extras = url[len(INTENT_PREFIX):].partition(INTENT_MARKER)
    options = {}
    for item in extras.split(";"):
        key, sep, value = item.partition("=")
        if sep:
            options[key.strip()] = value.strip()

    scheme = options.get("scheme")
    if not scheme or not body:
        return event

    prefix = f"{scheme}/"
    if body.lower().startswith(prefix.lower()):
        body = body[len(prefix):]
    return event.model_copy(update={
        "unwrapped_url": f"{scheme}://{body}",
        "package": options.get("package"),
    })

def query_string(url: str) -> str:
    return url.partition("?")[2].partition("#")[0]

def navigation_hint(url: str) -> Optional[str]:
    lowered = url.lower()
    for hint, needles in NAVIGATION_HINTS:
        if any(needle in lowered for needle in needles):
            return hint
    return None

class DeepLinkInterceptor:
    def __init__(self, launcher: Optional[Launcher] = None,
                 on_home: Optional[Callable[[], None]] = None,
                 on_close: Optional[Callable[[str], None]] = None):
        self.launcher = launcher or webbrowser.open
        self.on_home = on_home
        self.on_close = on_close
        self.launched: List[str] = []

    def _launch(self, url: str) -> bool:
        try:
            opened = self.launcher(url)
        except Exception as e:
            # A missing vendor app is expected; the page stays where it is
            logger.warning(f"Could not open {url_scheme(url)}:// link: {e}")
            return False
        if opened is False:
            logger.warning(f"OS refused to open {url_scheme(url)}:// link")
            return False
        self.launched.append(url)
        logger.info(f"Opened {url_scheme(url)}:// link externally")
        return True

    def _launch_first(self, candidates: Iterable[str]) -> bool:
        for candidate in candidates:
            if self._launch(candidate):
                return True
        return False

    def _dispatch_intent(self, url: str) -> NavigationDecision:
        event = parse_intent(url)
        if event.unwrapped_url is None:
            logger.warning("Malformed intent link, trying generic vendor apps")
            dispatched = self._launch_first(GENERIC_VENDOR_ROOTS)
            return NavigationDecision(allow=False, dispatched_externally=dispatched)

        if self._launch(event.unwrapped_url):
            return NavigationDecision(allow=False, dispatched_externally=True)

        query = query_string(event.unwrapped_url)
        alternates = [template.format(query=query) for template in ALTERNATE_PAY_TEMPLATES] if query \
            else list(GENERIC_VENDOR_ROOTS)
        dispatched = self._launch_first(a for a in alternates if a != event.unwrapped_url)
        return NavigationDecision(allow=False, dispatched_externally=dispatched)

    def _dispatch_vendor(self, url: str) -> NavigationDecision:
        if self._launch(url):
            return NavigationDecision(allow=False, dispatched_externally=True)
        dispatched = self._launch_first(root for root in GENERIC_VENDOR_ROOTS if not url.startswith(root))
        return NavigationDecision(allow=False, dispatched_externally=dispatched)

    def should_allow_navigation(self, url: str) -> NavigationDecision:
        url = url.strip()
        scheme = url_scheme(url)

        if scheme == "intent":
            return self._dispatch_intent(url)
        if scheme in VENDOR_SCHEMES:
            return self._dispatch_vendor(url)
        if scheme in WEB_SCHEMES:
            return NavigationDecision(allow=True)

        logger.info(f"Blocking navigation to unsupported scheme {scheme or '<none>'}")
        return NavigationDecision(allow=False)

    def handle_message(self, raw: str) -> Optional[str]:
        """Handle a bridge message; returns the action taken ("launch", "home") or None."""
        text = (raw or "").strip()
        if text in HOME_MESSAGES:
            self._go_home()
            return "home"

        try:
            message = BridgeMessage.model_validate(json.loads(text))
        except (ValueError, ValidationError):
            logger.info("Ignoring unrecognized bridge message")
            return None

        if message.type == "goto-home":
            self._go_home()
            return "home"
        if message.url:
            decision = self.should_allow_navigation(message.url)
            if not decision.allow:
                return "launch"
        return None

    def _go_home(self) -> None:
        logger.info("Bridge requested return to home")
        if self.on_home is not None:
            self.on_home()

    def observe_navigation(self, url: str) -> Optional[str]:
        """Coarse outcome hint for a page that finished loading. Not a verified result."""
        if url_scheme(url) not in ("http", "https"):
            return None
        hint = navigation_hint(urlsplit(url).path + "?" + urlsplit(url).query)
        if hint is not None:
            logger.info(f"Navigation suggests {hint}, closing embedded surface")
            if self.on_close is not None:
                self.on_close(hint)
        return hint

def bridge_script() -> str:
    """JavaScript injected into the embedded surface to report vendor links and home requests."""
    schemes = json.dumps([f"{s}://" for s in VENDOR_SCHEMES] + [INTENT_PREFIX])
    return BRIDGE_SCRIPT_TEMPLATE.replace("__SCHEMES__", schemes)

BRIDGE_SCRIPT_TEMPLATE = """
(function () {
  var schemes = __SCHEMES__;
  function post(message) {
    var bridge = window.ReactNativeWebView || window.parent;
    bridge.postMessage(typeof message === 'string' ? message : JSON.stringify(message), '*');
  }
  function isVendorLink(url) {
    if (!url) { return false; }
    for (var i = 0; i < schemes.length; i++) {
      if (String(url).indexOf(schemes[i]) === 0) { return true; }
    }
    return false;
  }
  var originalOpen = window.open;
  window.open = function (url) {
    if (isVendorLink(url)) {
      post({ type: 'upi-link', url: url });
      return null;
    }
    return originalOpen.apply(window, arguments);
  };
  document.addEventListener('click', function (event) {
    var target = event.target && event.target.closest ? event.target.closest('a') : null;
    if (target && isVendorLink(target.href)) {
      event.preventDefault();
      post({ type: 'upi-link', url: target.href });
    }
  }, true);
  document.addEventListener('submit', function (event) {
    if (isVendorLink(event.target.action)) {
      event.preventDefault();
      post({ type: 'upi-link', url: event.target.action });
    }
  }, true);
  window.goToHome = function () {
    post({ type: 'goto-home' });
  };
})();
true;
"""
