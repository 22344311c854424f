"""
Loopback OAuth Redirect Listener

A one-shot HTTP endpoint on ``http://localhost:<ephemeral-port>/`` that
accepts exactly one authorization redirect (code or error) and resolves a
future with it. The future is cancellable and awaited with a deadline.
"""
import asyncio
import html
from dataclasses import dataclass

import structlog
from aiohttp import web

from resource_broker.shared.core.exceptions import (
    AuthenticationCancelled,
    AuthenticationFailed,
    AuthenticationTimeout,
)

logger = structlog.get_logger()

_PAGE = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>{title}</title></head>
<body style="font-family: sans-serif; text-align: center; margin-top: 4rem;">
  <h1>{title}</h1>
  {body}
</body>
</html>"""


@dataclass(frozen=True)
class AuthorizationResponse:
    code: str
    state: str | None = None


def _render(title: str, body: str) -> str:
    return _PAGE.format(title=html.escape(title), body=body)


def success_page() -> str:
    return _render(
        "Authentication Successful",
        "<p>You can close this window and return to your application.</p>",
    )


def error_page(error: str, description: str) -> str:
    return _render(
        "Authentication Failed",
        f"<p><code>{html.escape(error)}</code></p>"
        f"<p>{html.escape(description)}</p>"
        "<p>Please close this window and try again.</p>",
    )


def waiting_page() -> str:
    return _render(
        "Authenticating...",
        "<p>Please complete sign-in in the browser window.</p>",
    )


def _html(status: int, page: str) -> web.Response:
    return web.Response(status=status, text=page, content_type="text/html", charset="utf-8")


class LoopbackCallbackServer:
    def __init__(self, expected_state: str | None = None, host: str = "127.0.0.1"):
        self.expected_state = expected_state
        self.host = host
        self.port: int | None = None
        self._runner: web.AppRunner | None = None
        self._result: asyncio.Future[AuthorizationResponse] | None = None

    @property
    def redirect_uri(self) -> str:
        if self.port is None:
            raise RuntimeError("Callback server is not started")
        return f"http://localhost:{self.port}/"

    @property
    def done(self) -> bool:
        return self._result is not None and self._result.done()

    def _build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/", self.handle_redirect)
        return app

    async def start(self) -> str:
        loop = asyncio.get_running_loop()
        self._result = loop.create_future()
        self._runner = web.AppRunner(self._build_app(), access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, 0)
        await site.start()
        self.port = self._runner.addresses[0][1]
        logger.debug("oauth_callback_listening", port=self.port)
        return self.redirect_uri

    async def wait(self, timeout: float) -> AuthorizationResponse:
        """
        Block until the redirect arrives, the deadline passes, or cancel() is called.
        """
        if self._result is None:
            raise RuntimeError("Callback server is not started")
        try:
            return await asyncio.wait_for(asyncio.shield(self._result), timeout=timeout)
        except asyncio.TimeoutError as e:
            minutes = timeout / 60
            raise AuthenticationTimeout(
                f"Authentication timed out after {minutes:g} minutes",
                details={"timeout_seconds": timeout},
            ) from e
        finally:
            await self.close()

    def cancel(self, reason: AuthenticationCancelled) -> None:
        self._settle(exception=reason)

    async def close(self) -> None:
        if self._runner is not None:
            runner, self._runner = self._runner, None
            await runner.cleanup()
            logger.debug("oauth_callback_closed", port=self.port)
        if self._result is not None and not self._result.done():
            self._result.cancel()

    def _settle(
        self,
        result: AuthorizationResponse | None = None,
        exception: BaseException | None = None,
    ) -> bool:
        if self._result is None or self._result.done():
            return False
        if exception is not None:
            self._result.set_exception(exception)
        else:
            self._result.set_result(result)  # type: ignore[arg-type]
        return True

    async def handle_redirect(self, request: web.Request) -> web.StreamResponse:
        if self.done:
            raise web.HTTPGone()

        params = request.query
        error = params.get("error")
        if error:
            description = params.get("error_description", "Unknown error")
            return await self._finish(
                request,
                _html(400, error_page(error, description)),
                exception=AuthenticationFailed(
                    f"Authentication failed: {error} - {description}",
                    details={"error": error},
                ),
            )

        code = params.get("code")
        if code:
            state = params.get("state")
            if self.expected_state is not None and state != self.expected_state:
                return await self._finish(
                    request,
                    _html(
                        400,
                        error_page(
                            "invalid_state",
                            "The sign-in response did not match this request.",
                        ),
                    ),
                    exception=AuthenticationFailed(
                        "Authentication failed: state mismatch in redirect"
                    ),
                )
            return await self._finish(
                request,
                _html(200, success_page()),
                result=AuthorizationResponse(code=code, state=state),
            )

        return _html(200, waiting_page())

    async def _finish(
        self,
        request: web.Request,
        response: web.Response,
        result: AuthorizationResponse | None = None,
        exception: BaseException | None = None,
    ) -> web.StreamResponse:
        # The page is flushed before the waiter wakes and tears the listener down.
        await response.prepare(request)
        await response.write_eof()
        self._settle(result, exception)
        return response
