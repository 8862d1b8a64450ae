import logging
from typing import Callable, List, Optional
from urllib.parse import parse_qs, urlsplit

log = logging.getLogger(__name__)


class Navigator:
    """Tracks the current location and records redirects issued by the flow.

    Hosts that can actually navigate (a browser bridge, a webview) pass an
    ``on_navigate`` callback; the terminal host only records the target.
    """

    def __init__(self, path: str = "/", on_navigate: Optional[Callable[[str], None]] = None):
        self.url = path
        self.history: List[str] = []
        self._on_navigate = on_navigate

    @property
    def path(self) -> str:
        return urlsplit(self.url).path or "/"

    @property
    def query(self) -> dict:
        return parse_qs(urlsplit(self.url).query, keep_blank_values=True)

    def go(self, url: str) -> None:
        log.info("[NAV] Redirecting to %s", url)
        self.url = url
        self.history.append(url)
        if self._on_navigate:
            self._on_navigate(url)

    def is_login_page(self) -> bool:
        return self.path == "/" or "/login" in self.path
