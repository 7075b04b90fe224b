from __future__ import annotations

import socket
import time
import urllib.error
import urllib.request

from .base import AdapterError, AdapterTimeoutError, CheckResult

DEFAULT_USER_AGENT = "PureFlow-LinkChecker/1.0"


class _KeepHeadRedirectHandler(urllib.request.HTTPRedirectHandler):
    """Follow redirects without turning a HEAD into a GET."""

    def redirect_request(self, req, fp, code, msg, headers, newurl):
        redirected = super().redirect_request(req, fp, code, msg, headers, newurl)
        if redirected is not None and req.get_method() == "HEAD":
            redirected.method = "HEAD"
        return redirected


class UrllibReachabilityChecker:
    """HEAD request; redirects are followed and stay HEAD.

    HTTP error statuses come back as a ``CheckResult``; only transport
    failures raise.
    """

    def __init__(self, user_agent: str = DEFAULT_USER_AGENT, clock=time.monotonic) -> None:
        self.user_agent = user_agent
        self._clock = clock
        self._opener = urllib.request.build_opener(_KeepHeadRedirectHandler)

    def check(self, url: str, timeout: float) -> CheckResult:
        request = urllib.request.Request(url, method="HEAD")
        request.add_header("User-Agent", self.user_agent)
        started = self._clock()
        try:
            with self._opener.open(request, timeout=timeout) as response:
                status = int(response.status)
        except urllib.error.HTTPError as exc:
            status = int(exc.code)
        except urllib.error.URLError as exc:
            if isinstance(exc.reason, (socket.timeout, TimeoutError)):
                raise AdapterTimeoutError(f"timeout after {timeout:.1f}s") from exc
            raise AdapterError(f"network_error: {exc.reason}") from exc
        except (socket.timeout, TimeoutError) as exc:
            raise AdapterTimeoutError(f"timeout after {timeout:.1f}s") from exc
        except OSError as exc:
            raise AdapterError(f"network_error: {exc}") from exc
        elapsed_ms = int((self._clock() - started) * 1000)
        return CheckResult(status_code=status, response_time_ms=elapsed_ms)
