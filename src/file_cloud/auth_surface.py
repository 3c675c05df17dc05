# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
External authentication surfaces.

A surface shows the authorization URL to the user and resolves with the
redirect URL once the intermediary sends the browser back to the app. A
surface closed without a redirect raises UserCancelledError.
"""

import asyncio
import logging
import webbrowser
from typing import Callable, Optional, Protocol
from urllib.parse import urlparse

from rich.console import Console
from rich.markup import escape as rich_escape
from rich.panel import Panel
from rich.text import Text

from .error_handler import UserCancelledError
from .utils.headless_detection import is_headless_environment

lib_logger = logging.getLogger("file_cloud")
console = Console()

DEFAULT_AUTH_TIMEOUT: float = 120.0

_SUCCESS_PAGE = (
    b"<html><body><h1>Authentication complete</h1>"
    b"<p>You can close this window and return to the application.</p></body></html>"
)
_FAILURE_PAGE = (
    b"<html><body><h1>Authentication failed</h1>"
    b"<p>Return to the application for details.</p></body></html>"
)


class AuthSurface(Protocol):
    async def launch(self, auth_url: str, redirect_scheme: str) -> str:
        """Show ``auth_url`` and return the full redirect URL, or raise UserCancelledError."""
        ...


class LoopbackBrowserSurface:
    """
    Opens the system browser and captures the redirect on a loopback listener.

    The redirect scheme must be an ``http://127.0.0.1:<port>/<path>`` (or
    ``localhost``) URI; the listener binds that port for the duration of one
    attempt. State checking is left to the coordinator.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_AUTH_TIMEOUT,
        opener: Optional[Callable[[str], object]] = None,
        host: str = "127.0.0.1",
        open_browser: Optional[bool] = None,
    ):
        self._timeout = timeout
        self._opener = opener or webbrowser.open
        self._host = host
        self._open_browser = open_browser  # None = decide from the environment

    @staticmethod
    def _parse_redirect(redirect_scheme: str):
        parsed = urlparse(redirect_scheme)
        if parsed.scheme != "http" or parsed.hostname not in ("127.0.0.1", "localhost"):
            raise ValueError(
                f"Loopback surface needs an http://127.0.0.1 redirect, got '{redirect_scheme}'"
            )
        return parsed.port or 80, parsed.path or "/"

    async def launch(self, auth_url: str, redirect_scheme: str) -> str:
        port, callback_path = self._parse_redirect(redirect_scheme)
        redirect_future: asyncio.Future = asyncio.get_running_loop().create_future()
        server = None

        async def handle_callback(reader, writer):
            try:
                request_line_bytes = await reader.readline()
                if not request_line_bytes:
                    return
                path_str = request_line_bytes.decode("utf-8").strip().split(" ")[1]
                while await reader.readline() not in (b"\r\n", b"\n", b""):
                    pass

                if urlparse(path_str).path != callback_path:
                    writer.write(b"HTTP/1.1 404 Not Found\r\nContent-Length: 0\r\n\r\n")
                    await writer.drain()
                    return

                query = urlparse(path_str).query
                page = _FAILURE_PAGE if "error=" in query else _SUCCESS_PAGE
                writer.write(
                    b"HTTP/1.1 200 OK\r\nContent-Type: text/html\r\n"
                    + f"Content-Length: {len(page)}\r\n\r\n".encode()
                    + page
                )
                await writer.drain()

                if not redirect_future.done():
                    redirect_future.set_result(f"http://{self._host}:{port}{path_str}")
            except Exception as e:
                lib_logger.error(f"Error in OAuth callback handler: {e}")
            finally:
                writer.close()

        is_headless = (
            not self._open_browser if self._open_browser is not None else is_headless_environment()
        )

        try:
            server = await asyncio.start_server(handle_callback, self._host, port)

            if is_headless:
                panel_text = Text.from_markup(
                    "Running in headless environment (no GUI detected).\n"
                    "Please open the URL below in a browser on this machine to authorize:\n"
                )
            else:
                panel_text = Text.from_markup(
                    "1. Your browser will now open to sign in and grant access.\n"
                    "2. If it doesn't open automatically, please open the URL below manually."
                )
            console.print(Panel(panel_text, title="Connect cloud storage account", style="bold blue"))
            console.print(f"[bold]URL:[/bold] [link={auth_url}]{rich_escape(auth_url)}[/link]\n")

            if not is_headless:
                try:
                    self._opener(auth_url)
                    lib_logger.info("Browser opened successfully for OAuth flow")
                except Exception as e:
                    lib_logger.warning(
                        f"Failed to open browser automatically: {e}. Please open the URL manually."
                    )

            with console.status(
                "[bold green]Waiting for you to complete authentication in the browser...[/bold green]",
                spinner="dots",
            ):
                return await asyncio.wait_for(redirect_future, timeout=self._timeout)

        except asyncio.TimeoutError:
            lib_logger.info(f"No redirect received within {self._timeout}s, treating as cancelled")
            raise UserCancelledError("Authentication window closed or timed out")
        finally:
            if server:
                server.close()
                await server.wait_closed()
