"""FastAPI application for the recommendation serving core"""
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from recserve import metrics
from recserve.bandit import ContextualBanditEngine, RewardFeedback
from recserve.circuit_breaker import CircuitBreakerOpen, get_circuit_breakers_healthy, ranking_circuit_breaker
from recserve.clock import Clock, utc_now
from recserve.config import settings
from recserve.database import close_db, init_db
from recserve.lambda_architecture import LambdaArchitecture, build_lambda_architecture
from recserve.models import (
    ArmPerformance,
    ArmScore,
    BanditStatsResponse,
    BatchJobResponse,
    CacheInvalidationResponse,
    EventAcceptedResponse,
    HealthResponse,
    PreferenceEventRequest,
    RatingEventRequest,
    RecommendationsResponse,
    SelectArmRequest,
    SelectArmResponse,
    UpdateRewardRequest,
    UpdateRewardResponse,
    WatchlistEventRequest,
)
from recserve.ranking import RankingModel
from recserve.repositories import (
    DuplicateError,
    EventStore,
    ExperimentLog,
    InMemoryEventStore,
    InMemoryExperimentLog,
    NotFoundError,
    RepositoryError,
    SqlEventStore,
    SqlExperimentLog,
    ValidationError,
)

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Process-wide service graph shared by the request handlers."""
    events: EventStore
    experiments: ExperimentLog
    bandit: ContextualBanditEngine
    lambda_arch: LambdaArchitecture
    clock: Clock = utc_now


def build_services(model: Optional[RankingModel] = None, clock: Clock = utc_now) -> Services:
    """Build the service graph for the configured storage backend."""
    if settings.use_memory_storage:
        logger.info("Using in-memory storage; events are lost on restart")
        events, experiments = InMemoryEventStore(), InMemoryExperimentLog()
    else:
        events, experiments = SqlEventStore(), SqlExperimentLog()

    return Services(
        events=events,
        experiments=experiments,
        bandit=ContextualBanditEngine(experiments, clock=clock),
        lambda_arch=build_lambda_architecture(events, model=model, clock=clock),
        clock=clock,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


router = APIRouter()


@router.get("/")
async def root():
    return {
        "message": "Recommendation Serving API",
        "docs": "/docs",
        "health": "/api/health"
    }


@router.get("/api/health", response_model=HealthResponse)
async def health_check(services: Services = Depends(get_services)):
    """Health check endpoint"""
    try:
        storage_connected = await services.events.health_check()
    except Exception as e:
        logger.warning(f"Storage health check failed: {e}")
        storage_connected = False

    breakers_healthy = get_circuit_breakers_healthy()
    return HealthResponse(
        status="healthy" if storage_connected and breakers_healthy else "degraded",
        storage_backend=settings.storage_backend,
        storage_connected=storage_connected,
        ranking_circuit=ranking_circuit_breaker.state.value,
        scheduler_running=services.lambda_arch.scheduler_running,
    )


@router.get("/metrics")
async def prometheus_metrics():
    """Prometheus exposition endpoint"""
    if not metrics.prometheus_enabled():
        raise HTTPException(status_code=404, detail="Prometheus metrics are disabled")
    payload, content_type = metrics.render_latest()
    return Response(content=payload, media_type=content_type)


# --- Recommendations ---

@router.get("/api/recommendations/{user_id}", response_model=RecommendationsResponse)
async def get_recommendations(
    user_id: str,
    limit: int = Query(settings.default_recommendation_limit, ge=1, le=100),
    skip_cache: bool = Query(False, description="Force a fresh compute"),
    services: Services = Depends(get_services),
):
    """Recommendations from the serving layer (batch, realtime or merged)"""
    response = await services.lambda_arch.get_recommendations(
        user_id, limit=limit, skip_cache=skip_cache
    )
    return RecommendationsResponse(**response.to_dict())


# --- Events: stored, then handed to the speed layer after the response ---

async def _reward_experiment(services: Services, experiment_id: str, outcome_type: str) -> Optional[float]:
    """Close the bandit loop for an event; a rejected reward never fails the event."""
    try:
        return await services.bandit.record_outcome(experiment_id, outcome_type)
    except RepositoryError as e:
        logger.warning(f"Reward for experiment {experiment_id} not recorded ({outcome_type}): {e}")
        return None


@router.post("/api/events/rating", response_model=EventAcceptedResponse, status_code=202)
async def rating_event(
    request: RatingEventRequest,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
):
    await services.events.add_rating(
        request.user_id, request.item_id, request.rating, created_at=services.clock()
    )
    background_tasks.add_task(
        services.lambda_arch.speed_layer.on_rating_added,
        request.user_id,
        request.item_id,
        request.rating,
    )

    reward = None
    if request.experiment_id:
        outcome_type = services.bandit.rating_outcome(request.rating)
        reward = await _reward_experiment(services, request.experiment_id, outcome_type)

    return EventAcceptedResponse(user_id=request.user_id, experiment_reward=reward)


@router.post("/api/events/watchlist", response_model=EventAcceptedResponse, status_code=202)
async def watchlist_event(
    request: WatchlistEventRequest,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
):
    await services.events.add_watchlist(request.user_id, request.item_id, created_at=services.clock())
    background_tasks.add_task(
        services.lambda_arch.speed_layer.on_watchlist_added,
        request.user_id,
        request.item_id,
    )

    reward = None
    if request.experiment_id:
        reward = await _reward_experiment(services, request.experiment_id, "watchlisted")

    return EventAcceptedResponse(user_id=request.user_id, experiment_reward=reward)


@router.post("/api/events/preferences", response_model=EventAcceptedResponse, status_code=202)
async def preference_event(
    request: PreferenceEventRequest,
    background_tasks: BackgroundTasks,
    services: Services = Depends(get_services),
):
    await services.events.add_preference(
        request.user_id, request.preferences, created_at=services.clock()
    )
    background_tasks.add_task(
        services.lambda_arch.speed_layer.on_preference_updated,
        request.user_id,
        request.preferences,
    )

    reward = None
    if request.experiment_id and request.sentiment:
        reward = await _reward_experiment(
            services, request.experiment_id, f"preference_{request.sentiment}"
        )

    return EventAcceptedResponse(user_id=request.user_id, experiment_reward=reward)


# --- Bandit ---

@router.post("/api/bandit/select-arm", response_model=SelectArmResponse)
async def select_arm(request: SelectArmRequest, services: Services = Depends(get_services)):
    """Pick a recommendation strategy for the user's current context"""
    bandit = services.bandit
    context = await bandit.extract_context(
        request.user_id,
        session_duration=request.session_duration,
        device_type=request.device_type,
        mood=request.mood,
    )
    if request.genres:
        context = context.model_copy(update={"genres": request.genres})

    if request.contextual:
        selection = await bandit.select_contextual_arm(context)
    else:
        selection = await bandit.select_arm(context)

    experiment_id = None
    if request.log_experiment:
        experiment_id = await bandit.log_experiment(
            request.user_id, selection.arm_chosen, context, selection.exploration_rate
        )

    return SelectArmResponse(
        experiment_id=experiment_id,
        arm_chosen=selection.arm_chosen,
        sampled_reward=selection.sampled_reward,
        all_arm_scores=[ArmScore(**score) for score in selection.all_arm_scores],
        exploration_rate=selection.exploration_rate,
        context=context.model_dump(mode="json"),
    )


@router.post("/api/bandit/update-reward", response_model=UpdateRewardResponse)
async def update_reward(request: UpdateRewardRequest, services: Services = Depends(get_services)):
    """Attach the observed outcome to a logged experiment"""
    reward = request.reward
    if reward is None:
        reward = services.bandit.calculate_reward(request.outcome_type)

    await services.bandit.update_reward(
        RewardFeedback(
            experiment_id=request.experiment_id,
            reward=reward,
            outcome_type=request.outcome_type,
        )
    )
    return UpdateRewardResponse(
        experiment_id=request.experiment_id,
        outcome_type=request.outcome_type,
        reward=reward,
    )


@router.get("/api/bandit/stats/{user_id}", response_model=BanditStatsResponse)
async def bandit_stats(user_id: str, services: Services = Depends(get_services)):
    stats = await services.bandit.get_statistics(user_id)
    return BanditStatsResponse(
        user_id=user_id,
        arm_performance=[ArmPerformance(**vars(arm)) for arm in stats.arm_performance],
        total_experiments=stats.total_experiments,
        average_reward=stats.average_reward,
        best_arm=stats.best_arm,
        exploration_rate=stats.exploration_rate,
    )


# --- Lambda architecture ---

@router.post("/api/lambda/batch-job", response_model=BatchJobResponse)
async def run_batch_job(services: Services = Depends(get_services)):
    """Run the batch layer now"""
    try:
        result = await services.lambda_arch.trigger_batch_update()
    except RepositoryError:
        raise
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))
    return BatchJobResponse(**result.to_dict())


@router.get("/api/lambda/status")
async def lambda_status(services: Services = Depends(get_services)):
    return await services.lambda_arch.get_status()


@router.get("/api/lambda/statistics")
async def lambda_statistics(services: Services = Depends(get_services)):
    return await services.lambda_arch.get_statistics()


@router.delete("/api/lambda/cache/{user_id}", response_model=CacheInvalidationResponse)
async def invalidate_user_cache(user_id: str, services: Services = Depends(get_services)):
    await services.lambda_arch.cache.invalidate(user_id)
    return CacheInvalidationResponse(status="invalidated", user_id=user_id)


@router.delete("/api/lambda/cache", response_model=CacheInvalidationResponse)
async def clear_cache(services: Services = Depends(get_services)):
    await services.lambda_arch.cache.clear()
    return CacheInvalidationResponse(status="cleared")


def _error_response(status_code: int, error: RepositoryError) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"detail": error.message, "operation": error.operation},
    )


def create_app(
    services: Optional[Services] = None,
    enable_scheduler: Optional[bool] = None,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        services: Prebuilt service graph. Built from settings at startup when
            omitted (and the database is initialized for postgres storage).
        enable_scheduler: Start the batch scheduler on startup. Defaults to
            settings.scheduler_enabled.
    """
    if enable_scheduler is None:
        enable_scheduler = settings.scheduler_enabled

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logging.basicConfig(
            level=settings.log_level.upper(),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        owns_database = app.state.services is None and not settings.use_memory_storage
        if owns_database:
            await init_db()
        if app.state.services is None:
            app.state.services = build_services()

        lambda_arch = app.state.services.lambda_arch
        if enable_scheduler:
            lambda_arch.start_scheduler(settings.batch_interval_hours)

        yield

        await lambda_arch.stop_scheduler()
        if owns_database:
            await close_db()

    app = FastAPI(
        title="Recommendation Serving API",
        description="Lambda-architecture recommendation serving with a contextual bandit",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return _error_response(404, exc)

    @app.exception_handler(DuplicateError)
    async def duplicate_handler(request: Request, exc: DuplicateError):
        return _error_response(409, exc)

    @app.exception_handler(ValidationError)
    async def validation_handler(request: Request, exc: ValidationError):
        return _error_response(422, exc)

    @app.exception_handler(RepositoryError)
    async def repository_error_handler(request: Request, exc: RepositoryError):
        logger.error(f"Storage error: {exc}")
        return _error_response(503, exc)

    @app.exception_handler(CircuitBreakerOpen)
    async def circuit_open_handler(request: Request, exc: CircuitBreakerOpen):
        return JSONResponse(status_code=503, content={"detail": str(exc)})

    app.include_router(router)
    return app


app = create_app()
