"""
FastAPI server for draft sessions and live scores.

Provides HTTP endpoints to start, pick, skip, abort and monitor draft
sessions, read leaderboards, and inspect the market feed.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import List, Optional

import requests
from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from ..errors import InvalidConfig, PickRejected, SessionNotFound
from ..services import Services
from .api_serializers import (
    AbortRequest,
    LeaderboardResponse,
    MarketAssetResponse,
    MemberScoresResponse,
    PickRequest,
    PickResponse,
    SessionResponse,
    SkipRequest,
    SkipResponse,
    StartSessionRequest,
    TurnStatusResponse,
    serialize_leaderboard,
    serialize_market_asset,
    serialize_member_scores,
    serialize_pick,
    serialize_session,
    serialize_turn_status,
)
from .turn_order import round_robin_order, snake_order

logger = logging.getLogger(__name__)


def create_app(services: Services, run_feed: bool = True) -> FastAPI:
    """
    Build the API application around wired services.

    Args:
        services: Wired collaborators (see services.build_services)
        run_feed: Run the market feed loop for the application's lifetime

    Returns:
        FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        feed_task = None
        if run_feed:
            feed_task = asyncio.create_task(services.feed.run())
            logger.info("Market feed task started")
        try:
            yield
        finally:
            if feed_task is not None:
                await services.feed.stop()
                await feed_task
            services.close()

    app = FastAPI(
        title="Market Draft API",
        description="Turn-based prediction-market drafts with live scoring",
        version="1.0.0",
        lifespan=lifespan,
    )

    # CORS middleware for web UI access
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    orchestrator = services.orchestrator
    scoring = services.scoring

    # ===== Sessions =====

    @app.post("/sessions", response_model=SessionResponse, status_code=201)
    def start_session(request: StartSessionRequest):
        """
        Start a draft session for a league.

        Raises:
            400 Bad Request: Invalid setup or league already drafting
        """
        try:
            if request.snake:
                turn_order = snake_order(request.member_order, request.slots_per_member)
            else:
                turn_order = round_robin_order(request.member_order)

            session_id = orchestrator.start_session(
                league_id=request.league_id,
                member_order=turn_order,
                slots_per_member=request.slots_per_member,
                asset_pool=request.asset_pool,
                turn_timeout=request.turn_timeout,
                allow_late_fill=request.allow_late_fill,
                identities=request.identities,
            )
            return serialize_session(orchestrator.get_session(session_id))

        except InvalidConfig as e:
            logger.warning(f"Cannot start session: {e}")
            raise HTTPException(status_code=400, detail=str(e))

        except Exception as e:
            logger.error(f"Failed to start session: {e}", exc_info=True)
            raise HTTPException(status_code=500, detail=f"Failed to start session: {e}")

    @app.get("/sessions/{session_id}", response_model=SessionResponse)
    def get_session(session_id: str):
        try:
            return serialize_session(orchestrator.get_session(session_id))

        except SessionNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))

        except Exception as e:
            logger.error(f"Failed to get session: {e}", exc_info=True)
            raise HTTPException(status_code=500, detail=f"Failed to get session: {e}")

    @app.post("/sessions/{session_id}/picks", response_model=PickResponse, status_code=201)
    def submit_pick(session_id: str, request: PickRequest):
        """
        Submit a pick for the member whose turn it is.

        Raises:
            404 Not Found: Unknown session
            409 Conflict: Not your turn, asset taken, roster full or session over
        """
        try:
            pick = orchestrator.submit_pick(session_id, request.member_id, request.asset_id)
            return serialize_pick(pick)

        except SessionNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))

        except PickRejected as e:
            logger.info(f"Pick rejected ({type(e).__name__}): {e}")
            raise HTTPException(status_code=409, detail={'error': type(e).__name__, 'message': str(e)})

        except Exception as e:
            logger.error(f"Failed to submit pick: {e}", exc_info=True)
            raise HTTPException(status_code=500, detail=f"Failed to submit pick: {e}")

    @app.post("/sessions/{session_id}/skip", response_model=SkipResponse)
    def skip_turn(session_id: str, request: Optional[SkipRequest] = None):
        """Advance past the current turn without a pick."""
        try:
            generation = request.generation if request else None
            advanced = orchestrator.skip_or_timeout_turn(session_id, generation=generation)
            return SkipResponse(
                advanced=advanced,
                turn=serialize_turn_status(orchestrator.get_turn_status(session_id)),
            )

        except SessionNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))

        except PickRejected as e:
            raise HTTPException(status_code=409, detail={'error': type(e).__name__, 'message': str(e)})

        except Exception as e:
            logger.error(f"Failed to skip turn: {e}", exc_info=True)
            raise HTTPException(status_code=500, detail=f"Failed to skip turn: {e}")

    @app.post("/sessions/{session_id}/abort", response_model=SessionResponse)
    def abort_session(session_id: str, request: Optional[AbortRequest] = None):
        """Cancel a session; its assets stop being scored."""
        try:
            session = orchestrator.abort_session(session_id, request.reason if request else None)
            return serialize_session(session)

        except SessionNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))

        except PickRejected as e:
            raise HTTPException(status_code=409, detail={'error': type(e).__name__, 'message': str(e)})

        except Exception as e:
            logger.error(f"Failed to abort session: {e}", exc_info=True)
            raise HTTPException(status_code=500, detail=f"Failed to abort session: {e}")

    @app.get("/sessions/{session_id}/turn", response_model=TurnStatusResponse)
    def get_turn_status(session_id: str):
        """Current turn owner, remaining assets and seconds left."""
        try:
            return serialize_turn_status(orchestrator.get_turn_status(session_id))

        except SessionNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))

        except Exception as e:
            logger.error(f"Failed to get turn status: {e}", exc_info=True)
            raise HTTPException(status_code=500, detail=f"Failed to get turn status: {e}")

    @app.get("/sessions/{session_id}/picks", response_model=List[PickResponse])
    def list_picks(session_id: str):
        try:
            return [serialize_pick(p) for p in orchestrator.list_picks(session_id)]

        except SessionNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))

        except Exception as e:
            logger.error(f"Failed to list picks: {e}", exc_info=True)
            raise HTTPException(status_code=500, detail=f"Failed to list picks: {e}")

    # ===== Scoring =====

    @app.get("/sessions/{session_id}/leaderboard", response_model=LeaderboardResponse)
    def get_leaderboard(session_id: str):
        """
        Members ranked by fantasy points.

        Raises:
            404 Not Found: Unknown (or aborted) session
        """
        try:
            return serialize_leaderboard(session_id, scoring.get_leaderboard(session_id))

        except SessionNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))

        except Exception as e:
            logger.error(f"Failed to build leaderboard: {e}", exc_info=True)
            raise HTTPException(status_code=500, detail=f"Failed to build leaderboard: {e}")

    @app.get("/sessions/{session_id}/members/{member_id}/scores", response_model=MemberScoresResponse)
    def get_member_scores(session_id: str, member_id: str):
        """Per-pick score breakdown for one member."""
        try:
            entries = scoring.get_member_scores(session_id, member_id)
            total = scoring.get_member_total(session_id, member_id)
            return serialize_member_scores(session_id, member_id, entries, total)

        except SessionNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))

        except Exception as e:
            logger.error(f"Failed to get member scores: {e}", exc_info=True)
            raise HTTPException(status_code=500, detail=f"Failed to get member scores: {e}")

    # ===== Feed / Markets =====

    @app.get("/feed/status")
    def get_feed_status():
        """Connection state and counters for the market feed."""
        try:
            return {
                'feed': services.feed.get_stats(),
                'cache': {
                    'known_assets': len(services.price_cache.known_assets()),
                    'watched_assets': len(services.price_cache.watched_assets()),
                    'applied': services.price_cache.applied_count,
                    'discarded': services.price_cache.discarded_count,
                },
                'scoring': scoring.get_stats(),
                'persistence': services.relay.get_stats(),
            }

        except Exception as e:
            logger.error(f"Failed to get feed status: {e}", exc_info=True)
            raise HTTPException(status_code=500, detail=f"Failed to get feed status: {e}")

    @app.get("/markets/assets", response_model=List[MarketAssetResponse])
    def list_market_assets(ending_within_days: Optional[int] = None, limit: int = 100):
        """
        Draftable outcome tokens from the market catalog.

        Raises:
            502 Bad Gateway: Catalog unreachable
        """
        try:
            assets = services.catalog.list_assets(ending_within_days=ending_within_days)
            return [serialize_market_asset(a) for a in assets[:limit]]

        except requests.RequestException as e:
            logger.error(f"Market catalog unavailable: {e}")
            raise HTTPException(status_code=502, detail=f"Market catalog unavailable: {e}")

        except Exception as e:
            logger.error(f"Failed to list market assets: {e}", exc_info=True)
            raise HTTPException(status_code=500, detail=f"Failed to list market assets: {e}")

    @app.get("/health")
    def health_check():
        """Health check endpoint."""
        return {
            'status': 'healthy',
            'sessions': len(orchestrator.list_sessions()),
            'feed_state': services.feed.state.value,
        }

    return app
