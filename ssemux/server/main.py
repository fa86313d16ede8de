"""
MODULE OVERVIEW:
The FastAPI application serving the demo feed.

WHAT IS HAPPENING HERE:
`/sse/feed` streams ticker frames with sse-starlette. When `SSEMUX_FEED_TOKEN`
is set, the endpoint wants `Authorization: Bearer <token>` and answers 401
otherwise. That is the one status a header-carrying client refuses to retry,
so it is the easiest way to watch the terminal-disconnect path by hand.
"""
from fastapi import FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from sse_starlette.sse import EventSourceResponse

from ssemux.server.feed import ticker_feed
from ssemux.shared.config import settings

app = FastAPI(
    title="ssemux demo feed",
    description="A ticker event stream for exercising ssemux clients",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET"],
    allow_headers=["*"],
)


def check_token(authorization: str | None) -> None:
    if settings.FEED_TOKEN and authorization != f"Bearer {settings.FEED_TOKEN}":
        raise HTTPException(status_code=401, detail="invalid or missing bearer token")


@app.get("/sse/feed", tags=["Feed"])
async def sse_feed(
    count: int | None = Query(None, ge=1, description="End the stream after this many frames"),
    interval_s: float | None = Query(None, ge=0, description="Seconds between frames"),
    authorization: str | None = Header(None),
):
    check_token(authorization)
    logger.info(f"protocol=sse event=connect count={count} interval_s={interval_s}")
    return EventSourceResponse(ticker_feed(count=count, interval_s=interval_s))


@app.get("/healthz", tags=["Ops"])
async def health_check():
    return {"status": "ok"}
