import io
import logging
import os
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional, TextIO

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse

from .bot import ZapBot
from .utils import json_log
from .webui import VERSION, router

APP_TITLE = "ZapBot AI Manager"


# Force a UTF-8 text stream for logging to avoid 'charmap' errors on Windows consoles
def _utf8_stream_for_stdout() -> TextIO:
    try:
        if hasattr(sys.stdout, "buffer"):
            return io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", errors="replace", line_buffering=True)
    except (AttributeError, ValueError):
        pass
    return sys.stdout


def configure_logging():
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO").upper(),
        format="%(message)s",
        handlers=[logging.StreamHandler(_utf8_stream_for_stdout())],
        force=True,  # override handlers added by uvicorn to keep the UTF-8 stream
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)


def create_app(bot: Optional[ZapBot] = None) -> FastAPI:
    """
    Build the FastAPI app. Without an explicit bot, one is assembled from the
    environment at startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if bot is None:
            load_dotenv()
            configure_logging()
        app.state.bot = bot or ZapBot.from_env()
        json_log("startup", version=VERSION)
        await app.state.bot.start()
        yield
        json_log("shutdown")
        await app.state.bot.stop()

    app = FastAPI(title=APP_TITLE, version=VERSION, lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(router)

    # Built dashboard (registered last so API routes win)
    static_dir = Path(os.getenv("STATIC_DIR", "dist")).resolve()
    if static_dir.is_dir():
        index = static_dir / "index.html"

        @app.get("/{full_path:path}", include_in_schema=False)
        async def dashboard(full_path: str):
            candidate = (static_dir / full_path).resolve()
            if full_path and static_dir in candidate.parents and candidate.is_file():
                return FileResponse(str(candidate))
            # client-side routes fall back to the SPA entry point
            if index.is_file():
                return FileResponse(str(index))
            raise HTTPException(status_code=404, detail="Not Found")

    return app


app = create_app()


def run():
    import uvicorn

    load_dotenv()
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "3001"))
    uvicorn.run("zapbot.main:app", host=host, port=port, reload=False)


if __name__ == "__main__":
    run()
