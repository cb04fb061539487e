import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pymongo.errors import PyMongoError

import config
from database import DuplicateEmailError, Store, connect_store, public_user
from schemas import (
    ROLES,
    LoginBody,
    Proposal,
    ProposalIn,
    RegisterBody,
    User,
    WaterUsage,
    WaterUsageIn,
)
from security import (
    InvalidToken,
    hash_password,
    token_for_user,
    verify_password,
    verify_token,
    warn_if_insecure_secret,
)

logger = logging.getLogger(__name__)

# auto_error=False: a missing header is reported as 401 by get_current_claims
bearer_scheme = HTTPBearer(auto_error=False)

router = APIRouter(prefix="/api")

# ------------------------- Dependencies -------------------------

def get_store(request: Request) -> Store:
    return request.app.state.store


def get_current_claims(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> dict:
    if credentials is None:
        raise HTTPException(status_code=401, detail="Access token required")
    try:
        return verify_token(credentials.credentials, request.app.state.jwt_secret)
    except InvalidToken as e:
        logger.info("Rejected bearer token (%s)", e.reason)
        raise HTTPException(status_code=403, detail="Invalid or expired token")

# ------------------------- Helpers -------------------------

def require_fields(body, *names: str) -> None:
    missing = [name for name in names if getattr(body, name) in (None, "")]
    if missing:
        raise HTTPException(status_code=400, detail=f"Missing required field(s): {', '.join(missing)}")


def internal_error(action: str) -> HTTPException:
    """Log the active store exception and build a generic 500 for the client."""
    logger.exception("%s failed", action)
    return HTTPException(status_code=500, detail=f"{action} failed")


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})

# ------------------------- Auth endpoints -------------------------

@router.post("/auth/register")
def register(body: RegisterBody, request: Request, store: Store = Depends(get_store)):
    require_fields(body, "name", "email", "password")
    role = body.role or "farmer"
    if role not in ROLES:
        raise HTTPException(status_code=400, detail="Invalid role")
    try:
        user = store.insert_user(User(
            name=body.name,
            email=body.email,
            password=hash_password(body.password),
            role=role,
            location=body.location,
            cropType=body.cropType,
        ))
    except DuplicateEmailError:
        raise HTTPException(status_code=400, detail="User already exists")
    except PyMongoError:
        raise internal_error("Registration")
    user = public_user(user)
    logger.info("Registered %s user %s", user["role"], user["id"])
    token = token_for_user(user, request.app.state.jwt_secret)
    return {"message": "Registration successful", "token": token, "user": user}


@router.post("/auth/login")
def login(body: LoginBody, request: Request, store: Store = Depends(get_store)):
    require_fields(body, "email", "password")
    try:
        user = store.find_user_by_email(body.email)
    except PyMongoError:
        raise internal_error("Login")
    # same message for unknown email and wrong password
    if not user or not verify_password(body.password, user.get("password", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    user = public_user(user)
    token = token_for_user(user, request.app.state.jwt_secret)
    return {"message": "Login successful", "token": token, "user": user}

# ------------------------- Proposals -------------------------

@router.get("/proposals")
def list_proposals(store: Store = Depends(get_store)):
    try:
        return store.find_proposals(status="active")
    except PyMongoError:
        raise internal_error("Fetching proposals")


@router.post("/proposals", status_code=201)
def create_proposal(body: ProposalIn, claims: dict = Depends(get_current_claims), store: Store = Depends(get_store)):
    require_fields(body, "title", "price")
    if body.price < 0:
        raise HTTPException(status_code=400, detail="price must be non-negative")
    proposal = Proposal(
        title=body.title,
        description=body.description,
        price=body.price,
        targetCrops=body.targetCrops or [],
        proposer=str(claims["userId"]),
    )
    try:
        return store.insert_proposal(proposal)
    except PyMongoError:
        raise internal_error("Creating proposal")


@router.delete("/proposals/{proposal_id}", status_code=204)
def delete_proposal(proposal_id: str, claims: dict = Depends(get_current_claims), store: Store = Depends(get_store)):
    try:
        proposal = store.get_proposal(proposal_id)
        if not proposal:
            raise HTTPException(status_code=404, detail="Proposal not found")
        if proposal["proposer"]["id"] != str(claims["userId"]):
            raise HTTPException(status_code=403, detail="Not authorized to delete this proposal")
        store.delete_proposal(proposal_id)
    except PyMongoError:
        raise internal_error("Deleting proposal")
    return Response(status_code=204)

# ------------------------- Water usage -------------------------

@router.get("/water-usage")
def list_water_usage(store: Store = Depends(get_store)):
    try:
        return store.find_water_usage()
    except PyMongoError:
        raise internal_error("Fetching water usage")


@router.post("/water-usage", status_code=201)
def create_water_usage(body: WaterUsageIn, claims: dict = Depends(get_current_claims), store: Store = Depends(get_store)):
    require_fields(body, "field", "litersUsed")
    usage = WaterUsage(
        field=body.field,
        litersUsed=body.litersUsed,
        status=body.status or "Optimal",
        userId=str(claims["userId"]),
    )
    try:
        return store.insert_water_usage(usage)
    except PyMongoError:
        raise internal_error("Creating water usage")

# ------------------------- Users & health -------------------------

@router.get("/users")
def list_users(store: Store = Depends(get_store)):
    try:
        users = store.find_users()
    except PyMongoError:
        raise internal_error("Fetching users")
    return [public_user(u) for u in users]


@router.get("/health")
def health(store: Store = Depends(get_store)):
    return {
        "status": "ok",
        "storeConnected": store.connected,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

# ------------------------- App factory -------------------------

def create_app(store: Optional[Store] = None, jwt_secret: str = config.JWT_SECRET) -> FastAPI:
    logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    warn_if_insecure_secret(jwt_secret)

    app = FastAPI(title="Smart Irrigation API")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )
    app.add_exception_handler(RequestValidationError, validation_exception_handler)

    app.state.store = store if store is not None else connect_store()
    app.state.jwt_secret = jwt_secret
    logger.info("Storage backend: %s", "MongoDB" if app.state.store.connected else "in-memory")

    app.include_router(router)

    @app.get("/")
    def read_root():
        return {"message": "Smart Irrigation API running"}

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    logger.info("Server running on http://%s:%s", config.HOST, config.PORT)
    uvicorn.run(app, host=config.HOST, port=config.PORT)
