from fastapi import FastAPI, Depends, Body, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from jose import JWTError
from typing import Any, Dict
import asyncio, logging, os

from .db import SessionLocal, engine, create_all
from .auth import require_user, decode_token
from .claims import ClaimTransaction, ReleaseTransaction, release_all
from .devices import DeviceListAggregator, LiveDeviceList
from .errors import (
    ClaimHubError, NotAuthenticated, InvalidCredentialsShape, MalformedDeviceId,
    AlreadyClaimed, PermissionDenied, IdentityError, BackendFailure,
)
from .identity import IdentityProvider
from .mqtt_pub import publish_status
from .schemas import AccountIn, TokenOut, CustomTokenOut, DeviceListOut, PermissionOut, ClaimOut
from .store import DataStore, make_rules

from fastapi.middleware.cors import CORSMiddleware

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

store = DataStore(SessionLocal, rules=make_rules())
provider = IdentityProvider(SessionLocal)

app = FastAPI(title="claimhub: device ownership")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # DEV ONLY
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
async def on_startup():
    await create_all(engine)

def get_store() -> DataStore:
    return store

def get_provider() -> IdentityProvider:
    return provider

async def current_uid(uid: str = Depends(require_user), provider: IdentityProvider = Depends(get_provider)) -> str:
    if await provider.get_user(uid) is None:
        raise NotAuthenticated("The account no longer exists.")
    return uid

def _status_for(exc: ClaimHubError) -> int:
    if isinstance(exc, IdentityError):
        if exc.code == "auth/internal-error":
            return 502
        return 400 if exc.code == "auth/invalid-password" else 401
    for cls, status in (
        (NotAuthenticated, 401),
        (InvalidCredentialsShape, 422),
        (MalformedDeviceId, 400),
        (AlreadyClaimed, 409),
        (PermissionDenied, 403),
        (BackendFailure, 502),
    ):
        if isinstance(exc, cls):
            return status
    return 500

@app.exception_handler(ClaimHubError)
async def claimhub_error(request, exc: ClaimHubError):
    return JSONResponse(status_code=_status_for(exc), content={"detail": str(exc), "code": exc.code})

# --- accounts ---

@app.post("/auth/accounts", response_model=TokenOut, status_code=201)
async def create_account(body: AccountIn, provider: IdentityProvider = Depends(get_provider)):
    user = await provider.create_user(body.email, body.password)
    return TokenOut(access_token=provider.issue_id_token(user), uid=user.uid)

@app.post("/auth/login", response_model=TokenOut)
async def login(body: Dict[str, Any] = Body(...), provider: IdentityProvider = Depends(get_provider)):
    """Body is one of:
    {"email": ..., "password": ...}
    {"customToken": ...}
    {"idToken": ..., "providerId": "google.com"}
    """
    user = await provider.sign_in(body)
    return TokenOut(access_token=provider.issue_id_token(user), uid=user.uid)

@app.post("/auth/custom-token", response_model=CustomTokenOut)
async def custom_token(uid: str = Depends(current_uid), provider: IdentityProvider = Depends(get_provider)):
    return CustomTokenOut(custom_token=await provider.create_custom_token(uid))

@app.delete("/auth/account", status_code=204)
async def delete_account(uid: str = Depends(current_uid), store: DataStore = Depends(get_store),
                         provider: IdentityProvider = Depends(get_provider)):
    await release_all(store, ReleaseTransaction(store), uid)
    await provider.delete_user(uid)

# --- devices ---

@app.get("/devices", response_model=DeviceListOut, response_model_by_alias=True)
async def list_devices(uid: str = Depends(current_uid), store: DataStore = Depends(get_store)):
    return DeviceListOut(devices=await DeviceListAggregator(store).list(uid))

@app.post("/devices/{device_id}/claim", response_model=ClaimOut, status_code=201)
async def claim_device(device_id: str, uid: str = Depends(current_uid), store: DataStore = Depends(get_store)):
    await ClaimTransaction(store).claim(uid, device_id)
    await publish_status(device_id, uid)
    return ClaimOut(status="claimed", device_id=device_id)

@app.delete("/devices/{device_id}", response_model=ClaimOut)
async def release_device(device_id: str, uid: str = Depends(current_uid), store: DataStore = Depends(get_store)):
    await ReleaseTransaction(store).release(uid, device_id)
    await publish_status(device_id, None)
    return ClaimOut(status="released", device_id=device_id)

@app.get("/devices/{device_id}/permission", response_model=PermissionOut)
async def device_permission(device_id: str, uid: str = Depends(current_uid), store: DataStore = Depends(get_store)):
    allowed = await DeviceListAggregator(store).has_permission(device_id, uid)
    return PermissionOut(device_id=device_id, has_permission=allowed)

@app.websocket("/devices/watch")
async def watch_devices(websocket: WebSocket, token: str, store: DataStore = Depends(get_store),
                        provider: IdentityProvider = Depends(get_provider)):
    """Pushes the caller's device list (JSON array) on connect and after every change.

    Browsers cannot set headers on websockets, so the id token comes as ?token=.
    """
    try:
        uid = decode_token(token)["sub"]
    except (JWTError, KeyError):
        await websocket.close(code=1008)
        return
    if await provider.get_user(uid) is None:
        await websocket.close(code=1008)
        return
    await websocket.accept()
    updates = LiveDeviceList(None, store).follow(uid)

    async def pump():
        async for devices in updates:
            await websocket.send_json([d.model_dump(by_alias=True) for d in devices])

    async def drain():
        while (await websocket.receive())["type"] != "websocket.disconnect":
            pass

    tasks = [asyncio.create_task(pump()), asyncio.create_task(drain())]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            exc = task.exception()
            if isinstance(exc, ClaimHubError):
                logger.warning("device watch for %s failed: %s", uid, exc)
                await websocket.close(code=1011)
            elif isinstance(exc, WebSocketDisconnect):
                logger.debug("device watch for %s disconnected", uid)
            elif exc is not None:
                raise exc
    finally:
        for task in tasks:
            task.cancel()
        await updates.aclose()
