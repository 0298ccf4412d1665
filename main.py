from contextlib import asynccontextmanager
import logging

from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from config import DispatchPolicy
from db import Repository
from dispatch import DispatchQueue, Dispatcher
from errors import ConcurrencyConflict, InvalidState, NotFound, RepositoryUnavailable
from lifecycle import PoolLifecycle
from matching import MatchingEngine
from models import DriverStatus

logger = logging.getLogger(__name__)


def _error(exc: Exception):
    if isinstance(exc, NotFound):
        return JSONResponse({"error": str(exc)}, status_code=404)
    if isinstance(exc, InvalidState):
        return JSONResponse({"error": str(exc)}, status_code=400)
    if isinstance(exc, ConcurrencyConflict):
        return JSONResponse({"error": str(exc)}, status_code=409)
    return JSONResponse({"error": str(exc)}, status_code=503)


def _missing(payload: dict, required):
    for k in required:
        if k not in payload:
            return JSONResponse({"error": f"missing {k}"}, status_code=400)
    return None


async def create_user(request: Request):
    payload = await request.json()
    missing = _missing(payload, ["name"])
    if missing:
        return missing
    repo = request.app.state.repository
    user = await run_in_threadpool(repo.add_user, payload["name"], payload.get("phone"))
    return JSONResponse({"id": user.id, "name": user.name}, status_code=201)


async def create_driver(request: Request):
    payload = await request.json()
    missing = _missing(payload, ["name", "lat", "lng"])
    if missing:
        return missing
    repo = request.app.state.repository
    driver = await run_in_threadpool(
        repo.add_driver,
        payload["name"],
        payload["lat"],
        payload["lng"],
        payload.get("total_seats", 4),
        payload.get("luggage_capacity", 2),
        payload.get("phone"),
    )
    return JSONResponse({"id": driver.id, "status": driver.status.value}, status_code=201)


async def update_driver_location(request: Request):
    driver_id = request.path_params["driver_id"]
    payload = await request.json()
    missing = _missing(payload, ["lat", "lng"])
    if missing:
        return missing
    repo = request.app.state.repository
    try:
        driver = await run_in_threadpool(repo.update_driver_location, driver_id, payload["lat"], payload["lng"])
    except (NotFound, ConcurrencyConflict, RepositoryUnavailable) as exc:
        return _error(exc)
    return JSONResponse({"id": driver.id, "lat": driver.lat, "lng": driver.lng})


async def update_driver_status(request: Request):
    driver_id = request.path_params["driver_id"]
    payload = await request.json()
    try:
        status = DriverStatus(payload.get("status"))
    except ValueError:
        return JSONResponse({"error": "status must be AVAILABLE or OFFLINE"}, status_code=400)
    repo = request.app.state.repository
    try:
        driver = await run_in_threadpool(repo.set_driver_status, driver_id, status)
    except (NotFound, InvalidState, ConcurrencyConflict, RepositoryUnavailable) as exc:
        return _error(exc)
    return JSONResponse({"id": driver.id, "status": driver.status.value})


async def create_ride(request: Request):
    payload = await request.json()
    missing = _missing(payload, ["user_id", "pickup_lat", "pickup_lng", "drop_lat", "drop_lng"])
    if missing:
        return missing
    repo = request.app.state.repository
    try:
        ride = await run_in_threadpool(
            repo.add_request,
            payload["user_id"],
            (payload["pickup_lat"], payload["pickup_lng"]),
            (payload["drop_lat"], payload["drop_lng"]),
            payload.get("seats", 1),
            payload.get("luggage", 0),
            payload.get("detour_tolerance_km", 5.0),
        )
    except NotFound as exc:
        return _error(exc)
    job_id = await run_in_threadpool(request.app.state.queue.enqueue, ride.id)
    return JSONResponse({"request_id": ride.id, "job_id": job_id, "status": ride.status.value}, status_code=201)


async def get_ride(request: Request):
    rid = request.path_params["request_id"]
    try:
        view = await run_in_threadpool(request.app.state.repository.request_view, rid)
    except NotFound as exc:
        return _error(exc)
    return JSONResponse(view)


async def cancel_ride(request: Request):
    rid = request.path_params["request_id"]
    try:
        result = await run_in_threadpool(request.app.state.lifecycle.cancel, rid)
    except (NotFound, ConcurrencyConflict, RepositoryUnavailable) as exc:
        return _error(exc)
    return JSONResponse({
        "request_id": rid,
        "status": "CANCELLED",
        "pool_id": result.pool_id,
        "pool_completed": result.pool_completed,
    })


async def get_pool(request: Request):
    pool_id = request.path_params["pool_id"]
    try:
        view = await run_in_threadpool(request.app.state.repository.pool_view, pool_id)
    except NotFound as exc:
        return _error(exc)
    return JSONResponse(view)


async def failed_jobs(request: Request):
    jobs = await run_in_threadpool(request.app.state.queue.failed_jobs)
    return JSONResponse([
        {"id": j.id, "request_id": j.request_id, "attempts": j.attempts, "error": j.last_error}
        for j in jobs
    ])


routes = [
    Route("/users", create_user, methods=["POST"]),
    Route("/drivers", create_driver, methods=["POST"]),
    Route("/drivers/{driver_id:int}/location", update_driver_location, methods=["POST"]),
    Route("/drivers/{driver_id:int}/status", update_driver_status, methods=["POST"]),
    Route("/rides", create_ride, methods=["POST"]),
    Route("/rides/{request_id:int}", get_ride, methods=["GET"]),
    Route("/rides/{request_id:int}/cancel", cancel_ride, methods=["POST"]),
    Route("/pools/{pool_id:int}", get_pool, methods=["GET"]),
    Route("/jobs/failed", failed_jobs, methods=["GET"]),
]


def create_app(repository: Repository = None, policy: DispatchPolicy = None, run_workers: bool = True) -> Starlette:
    repository = repository or Repository()
    policy = policy or DispatchPolicy.from_env()
    lifecycle = PoolLifecycle(repository)
    engine = MatchingEngine(repository, lifecycle)
    queue = DispatchQueue(repository, policy)
    dispatcher = Dispatcher(queue, engine)

    @asynccontextmanager
    async def lifespan(app):
        logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
        repository.connect()
        if run_workers:
            await dispatcher.start()
        try:
            yield
        finally:
            if run_workers:
                await dispatcher.stop()
            repository.dispose()

    app = Starlette(debug=False, routes=routes, lifespan=lifespan)
    app.state.repository = repository
    app.state.lifecycle = lifecycle
    app.state.engine = engine
    app.state.queue = queue
    app.state.dispatcher = dispatcher
    return app


app = create_app()
