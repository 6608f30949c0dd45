"""ktiming: karaoke timing engine HTTP server.

Start with:
    python main.py
    python main.py --host 0.0.0.0 --port 8000
    python main.py --reload
"""

from __future__ import annotations

import argparse
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ktiming.exceptions import AudioDecodeError, KTimingError

load_dotenv()


@asynccontextmanager
async def lifespan(application: FastAPI):
    # Startup
    from ktiming.utils.config import get_config
    from ktiming.utils.deps_check import check_all, print_dep_status
    from ktiming.utils.logging import setup_logging, Verbosity, info, success

    setup_logging(Verbosity.NORMAL)
    info("ktiming server starting...")
    print_dep_status(check_all())

    cfg = get_config()
    info(f"Tag mode: \\{cfg.tags.mode}, fft {cfg.audio.fft_size}, "
         f"{cfg.audio.buckets_per_second} buckets/s")
    success("Server ready: http://localhost:8000/docs")

    yield  # app runs here

    # Shutdown
    from ktiming.api.sessions import clear_sessions, set_feature_service
    set_feature_service(None)
    clear_sessions()


app = FastAPI(
    title="ktiming",
    description="Karaoke syllable timing engine: tag codec, interactive marking, audio features",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(KTimingError)
async def ktiming_error_handler(request: Request, exc: KTimingError):
    status = 422 if isinstance(exc, AudioDecodeError) else 400
    return JSONResponse(status_code=status, content={"detail": str(exc), "type": type(exc).__name__})


# ── API Routes ────────────────────────────────────────────────────────────────

from ktiming.api.routes import router as api_router  # noqa: E402
app.include_router(api_router)


# ── CLI Entry Point ───────────────────────────────────────────────────────────

def main():
    parser = argparse.ArgumentParser(description="ktiming server")
    parser.add_argument("--host", default="127.0.0.1", help="Bind host (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8000, help="Port (default: 8000)")
    parser.add_argument("--reload", action="store_true", help="Auto-reload on code changes")
    args = parser.parse_args()

    import uvicorn
    uvicorn.run(
        "main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="info",
    )


if __name__ == "__main__":
    main()
