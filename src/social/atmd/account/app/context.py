from typing import Dict, Optional, Tuple

from aiohttp import web


class RequestContext:
    """
    Cookie transport for one aiohttp request/response pair.

    Cookie changes made by the use cases are buffered, visible to later reads in the same
    request, and written onto the response with ``apply``. Cookies are HttpOnly and
    SameSite=Lax so they survive the top-level redirect back from an authorization server.
    """

    def __init__(self, request: web.Request, secure: bool = True) -> None:
        self.request = request
        self.secure = secure
        self._pending: Dict[str, Optional[Tuple[str, int]]] = {}

    def get_cookie(self, name: str) -> Optional[str]:
        if name in self._pending:
            pending = self._pending[name]
            return pending[0] if pending is not None else None
        return self.request.cookies.get(name, None)

    def set_cookie(self, name: str, value: str, max_age: int) -> None:
        self._pending[name] = (value, max_age)

    def delete_cookie(self, name: str) -> None:
        self._pending[name] = None

    def apply(self, response: web.StreamResponse) -> web.StreamResponse:
        for name, pending in self._pending.items():
            if pending is None:
                response.del_cookie(name, path="/")
                continue
            value, max_age = pending
            response.set_cookie(
                name,
                value,
                max_age=max_age,
                path="/",
                httponly=True,
                secure=self.secure,
                samesite="Lax",
            )
        return response
