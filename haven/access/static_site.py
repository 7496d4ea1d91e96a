import html
import os
import stat
from typing import List, Optional
from urllib.parse import quote

import anyio
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException
from starlette.requests import Request
from starlette.responses import (
    HTMLResponse,
    PlainTextResponse,
    RedirectResponse,
    Response,
)

INDEX_FILE = "index.html"


def _list_directory(full_path: str) -> List[str]:
    entries = []
    with os.scandir(full_path) as it:
        for entry in it:
            entries.append(entry.name + "/" if entry.is_dir() else entry.name)
    return sorted(entries)


def render_listing(url_path: str, entries: List[str]) -> str:
    """Render a minimal HTML index of a directory's entries."""
    title = html.escape(f"Index of {url_path}")
    items = [
        f'<li><a href="{quote(name)}">{html.escape(name)}</a></li>' for name in entries
    ]
    if url_path != "/":
        items.insert(0, '<li><a href="../">../</a></li>')
    return (
        f"<!DOCTYPE html><html><head><meta charset=\"utf-8\"><title>{title}</title></head>"
        f"<body><h1>{title}</h1><ul>{''.join(items)}</ul></body></html>"
    )


class StaticSite:
    """
    Serve files below one directory.

    A directory is answered with its index.html. Without one, an HTML listing
    is rendered when show_dir_listing is set, otherwise the path is a 404.
    Missing files never fall back to a 404.html page.
    """

    def __init__(self, directory: str, show_dir_listing: bool = False):
        self.directory = directory
        self.show_dir_listing = show_dir_listing
        # The directory may be created after start-up
        self.files = StaticFiles(directory=directory, check_dir=False)

    async def response_for(self, request: Request) -> Response:
        path = self.files.get_path(request.scope)
        try:
            return await self.files.get_response(path, request.scope)
        except HTTPException as e:
            if e.status_code == 404:
                response = await self._directory_response(path, request)
                if response is not None:
                    return response
            return PlainTextResponse(
                str(e.detail), status_code=e.status_code, headers=e.headers
            )

    async def _directory_response(
        self, path: str, request: Request
    ) -> Optional[Response]:
        full_path, stat_result = await anyio.to_thread.run_sync(
            self.files.lookup_path, path
        )
        if stat_result is None or not stat.S_ISDIR(stat_result.st_mode):
            return None

        url_path = request.url.path
        if not url_path.endswith("/"):
            return RedirectResponse(url=str(request.url.replace(path=url_path + "/")))

        index_path, index_stat = await anyio.to_thread.run_sync(
            self.files.lookup_path, os.path.join(path, INDEX_FILE)
        )
        if index_stat is not None and stat.S_ISREG(index_stat.st_mode):
            return self.files.file_response(index_path, index_stat, request.scope)

        if not self.show_dir_listing:
            return None
        entries = await anyio.to_thread.run_sync(_list_directory, full_path)
        return HTMLResponse(render_listing(url_path, entries))
