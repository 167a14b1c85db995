# =============================================================================
#  Babelcord
#  Copyright (C) 2025 github.com/Copycord
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations
import logging
import time
from typing import Any, Callable, Dict

from fastapi import FastAPI
from fastapi.responses import JSONResponse, PlainTextResponse

from common.config import CURRENT_VERSION

APP_TITLE = "Babelcord"
LOGGER = logging.getLogger("babelcord.admin")


def create_app(
    collect_stats: Callable[[], Dict[str, Any]],
    is_ready: Callable[[], bool] = lambda: True,
) -> FastAPI:
    """
    Read-only status app. ``collect_stats`` is called per request and must
    return JSON-serialisable data.
    """
    app = FastAPI(title=APP_TITLE, version=CURRENT_VERSION.lstrip("v"))
    started = time.time()

    @app.get("/health", response_class=PlainTextResponse)
    async def health():
        if is_ready():
            return "ok"
        return PlainTextResponse("not ready", status_code=503)

    @app.get("/status", response_class=JSONResponse)
    async def status_json():
        try:
            stats = collect_stats()
        except Exception:
            LOGGER.exception("[⛔] Failed to collect status")
            return JSONResponse({"ok": False, "error": "stats unavailable"}, status_code=500)
        return {
            "ok": True,
            "version": CURRENT_VERSION,
            "ready": is_ready(),
            "uptime_seconds": round(time.time() - started, 1),
            **stats,
        }

    return app
