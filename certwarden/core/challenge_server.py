"""
HTTP-01 challenge responder.

Serves /.well-known/acme-challenge/{token} on a fixed local port while a
renewal is in progress. Operators reverse-proxy public port 80 traffic
for that path to this port.
"""

import asyncio
import logging
import socket

import uvicorn
from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

logger = logging.getLogger(__name__)

CHALLENGE_PATH = "/.well-known/acme-challenge"
DEFAULT_CHALLENGE_PORT = 5002


class ChallengeServerError(Exception):
    """Challenge responder could not be started."""

    def __init__(self, message: str, suggestion: str = None):
        self.message = message
        self.suggestion = suggestion
        super().__init__(message)


def create_challenge_app(tokens: dict[str, str]) -> FastAPI:
    """Build the responder application over a shared token map."""
    app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)

    @app.get(CHALLENGE_PATH + "/{token}", response_class=PlainTextResponse)
    async def acme_challenge(token: str):
        key_authorization = tokens.get(token)
        if key_authorization is None:
            logger.warning(f"Unknown ACME challenge token requested: {token}")
            return PlainTextResponse("not found", status_code=404)
        logger.info(f"Served ACME challenge for token {token}")
        return PlainTextResponse(key_authorization)

    return app


class ChallengeResponder:
    """
    Locally served HTTP-01 responder.

    Usable as an async context manager; the listener only exists while
    the context is open.
    """

    def __init__(self, port: int = DEFAULT_CHALLENGE_PORT, host: str = "0.0.0.0"):
        self.host = host
        self.port = port
        self.tokens: dict[str, str] = {}
        self.app = create_challenge_app(self.tokens)
        self._server: uvicorn.Server | None = None
        self._task: asyncio.Task | None = None

    def add_token(self, token, key_authorization: str) -> None:
        # Handle bytes token from ACME library
        if isinstance(token, bytes):
            token = token.decode("utf-8")
        self.tokens[token] = key_authorization
        logger.debug(f"Registered challenge token {token}")

    def remove_token(self, token) -> None:
        if isinstance(token, bytes):
            token = token.decode("utf-8")
        self.tokens.pop(token, None)

    async def start(self) -> None:
        """Bind the port and start serving in the background."""
        if self._task is not None:
            return

        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.host, self.port))
        except OSError as e:
            sock.close()
            raise ChallengeServerError(
                f"Cannot bind HTTP-01 challenge responder to {self.host}:{self.port}: {e}",
                suggestion="Check that no other process is listening on the challenge port",
            )

        config = uvicorn.Config(self.app, log_level="warning", access_log=False, lifespan="off")
        self._server = uvicorn.Server(config)
        self._task = asyncio.create_task(self._server.serve(sockets=[sock]))

        while not self._server.started:
            if self._task.done():
                error = self._task.exception()
                self._task = None
                sock.close()
                raise ChallengeServerError(f"HTTP-01 challenge responder on port {self.port} failed to start: {error}")
            await asyncio.sleep(0.05)
        logger.info(f"HTTP-01 challenge responder listening on {self.host}:{self.port}")

    async def stop(self) -> None:
        """Stop serving and release the port."""
        if self._task is None:
            return
        self._server.should_exit = True
        await self._task
        self._task = None
        self._server = None
        self.tokens.clear()
        logger.debug(f"HTTP-01 challenge responder on port {self.port} stopped")

    async def __aenter__(self) -> "ChallengeResponder":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()
