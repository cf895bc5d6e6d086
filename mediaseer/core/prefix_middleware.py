"""WSGI middleware for serving the app below a URL base path."""

from typing import Callable, Iterable, Optional, Set


class PrefixMiddleware:
    """Strip ``prefix`` from PATH_INFO and move it to SCRIPT_NAME.

    Requests outside the prefix get a 404, except for ``bypass_paths`` which
    are served as-is (health checks hit the container directly).
    """

    def __init__(self, app: Callable, prefix: str, bypass_paths: Optional[Set[str]] = None):
        self.app = app
        self.prefix = prefix.rstrip("/")
        self.bypass_paths = bypass_paths or set()

    def __call__(self, environ: dict, start_response: Callable) -> Iterable[bytes]:
        path = environ.get("PATH_INFO", "") or ""

        if path in self.bypass_paths:
            return self.app(environ, start_response)

        if path == self.prefix or path.startswith(self.prefix + "/"):
            environ["SCRIPT_NAME"] = environ.get("SCRIPT_NAME", "") + self.prefix
            environ["PATH_INFO"] = path[len(self.prefix):] or "/"
            return self.app(environ, start_response)

        start_response("404 Not Found", [("Content-Type", "text/plain")])
        return [b"Not Found"]
