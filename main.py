import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, File, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from auth import FirebaseIdentityVerifier, Identity, IdentityVerifier, current_identity, initialize_firebase
from config import Settings
from database import DocumentStore, connect
from errors import ServiceError, forbidden, internal_errors, invalid
from lifecycle import QuestLifecycleEngine
from quests import QuestRepository
from schemas import (
    ApproveRequest,
    CustomisationUpdate,
    InitFieldsRequest,
    ProfileUpdate,
    ProfileView,
    QuestCreate,
    SubmissionCreate,
    SubmissionRemove,
    UnlockRequest,
    UserCreate,
)
from storage import BlobStore, FirebaseBlobStore, upload_image
from sweeper import ReconciliationSweeper
from users import UserLedger

logger = logging.getLogger(__name__)

STARTED_AT = time.monotonic()


# ---------- Wiring ----------

class Services:
    """Everything a request needs, built once per process."""

    def __init__(self, settings: Settings, store: DocumentStore,
                 verifier: IdentityVerifier, blobs: BlobStore):
        self.settings = settings
        self.store = store
        self.verifier = verifier
        self.blobs = blobs
        self.quests = QuestRepository(store)
        self.users = UserLedger(store)
        self.sweeper = ReconciliationSweeper(store)
        self.engine = QuestLifecycleEngine(
            store, self.quests, self.users, self.sweeper,
            creator_bonus=settings.creator_bonus,
        )


def get_services(request: Request) -> Services:
    return request.app.state.services


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s | %(levelname)-8s | %(name)-12s | %(message)s",
    )


router = APIRouter(prefix="/api")


# ---------- Quests ----------

@router.get("/quests")
def list_quests(services: Services = Depends(get_services)):
    with internal_errors("Failed to fetch quests"):
        return services.quests.list()


@router.post("/quests", status_code=201)
def create_quest(payload: QuestCreate,
                 identity: Identity = Depends(current_identity),
                 services: Services = Depends(get_services)):
    with internal_errors("Failed to add quest"):
        quest_id = services.quests.create(payload, identity.uid, payload.creatorName or identity.name)
    return {"message": f'Quest "{payload.name.strip()}" added successfully!', "questId": quest_id}


@router.patch("/quests/{quest_id}/accept")
def accept_quest(quest_id: str,
                 identity: Identity = Depends(current_identity),
                 services: Services = Depends(get_services)):
    with internal_errors("Failed to accept quest"):
        services.engine.accept(quest_id, identity.uid)
    return {"message": "Quest accepted successfully"}


@router.patch("/quests/{quest_id}/abandon")
def abandon_quest(quest_id: str,
                  identity: Identity = Depends(current_identity),
                  services: Services = Depends(get_services)):
    with internal_errors("Failed to abandon quest"):
        services.engine.abandon(quest_id, identity.uid)
    return {"message": "Quest abandoned successfully"}


@router.patch("/quests/{quest_id}/submit")
def submit_quest(quest_id: str, payload: SubmissionCreate,
                 identity: Identity = Depends(current_identity),
                 services: Services = Depends(get_services)):
    with internal_errors("Failed to submit quest"):
        submission = services.engine.submit(
            quest_id, identity.uid, payload.imageUrl, payload.displayName or identity.name
        )
    return {"message": "Submission received", "submission": submission}


@router.get("/quests/{quest_id}/submissions")
def list_submissions(quest_id: str,
                     identity: Identity = Depends(current_identity),
                     services: Services = Depends(get_services)):
    with internal_errors("Failed to fetch submissions"):
        return services.engine.list_submissions(quest_id, identity.uid)


@router.patch("/quests/{quest_id}/submissions/remove")
def remove_submission(quest_id: str, payload: SubmissionRemove,
                      identity: Identity = Depends(current_identity),
                      services: Services = Depends(get_services)):
    with internal_errors("Failed to remove submission"):
        removed = services.engine.remove_submission(
            quest_id, identity.uid, index=payload.index, user_id=payload.userId
        )
    return {"message": "Submission removed", "removed": removed}


@router.post("/quests/{quest_id}/approve")
def approve_quest(quest_id: str, payload: ApproveRequest,
                  identity: Identity = Depends(current_identity),
                  services: Services = Depends(get_services)):
    with internal_errors("Failed to approve quest"):
        result = services.engine.approve(quest_id, identity.uid, payload.approvedUserId)
    return {"message": "Quest approved and closed", **result}


@router.delete("/quests/{quest_id}")
def close_quest(quest_id: str,
                identity: Identity = Depends(current_identity),
                services: Services = Depends(get_services)):
    with internal_errors("Failed to close quest"):
        swept = services.engine.close(quest_id, identity.uid)
    return {"message": "Quest and associated user data removed successfully", "sweptUsers": swept}


# ---------- Users ----------
# Fixed paths must be registered before /users/{user_id}.

@router.post("/users")
def create_user(payload: UserCreate,
                identity: Identity = Depends(current_identity),
                services: Services = Depends(get_services)):
    if payload.userId != identity.uid:
        raise forbidden("User ID mismatch")
    with internal_errors("Failed to add user"):
        created = services.users.create(payload.userId, payload.email, payload.name, payload.role)
    return {"message": "User added successfully" if created else "User already exists"}


@router.get("/users/profile", response_model=ProfileView)
def get_profile(identity: Identity = Depends(current_identity),
                services: Services = Depends(get_services)):
    with internal_errors("Failed to fetch profile data"):
        return services.users.get_profile(identity.uid)


@router.patch("/users/profile")
def update_profile(payload: ProfileUpdate,
                   identity: Identity = Depends(current_identity),
                   services: Services = Depends(get_services)):
    if payload.uid is not None and payload.uid != identity.uid:
        raise forbidden("Cannot update another user's profile")
    changes = payload.model_dump(exclude_unset=True, exclude={"uid"})
    with internal_errors("Failed to update profile data"):
        updated = services.users.update_profile(identity.uid, changes)
    if not updated:
        return {"message": "No fields provided for update", "updatedFields": []}
    return {"message": "Profile updated successfully", "updatedFields": updated}


@router.get("/users/inventory")
def get_inventory(identity: Identity = Depends(current_identity),
                  services: Services = Depends(get_services)):
    with internal_errors("Failed to fetch inventory/customisation data"):
        return services.users.get_inventory(identity.uid)


@router.post("/users/inventory/unlock")
def unlock_item(payload: UnlockRequest,
                identity: Identity = Depends(current_identity),
                services: Services = Depends(get_services)):
    if not payload.itemId or payload.cost is None:
        raise invalid("Missing itemId or cost in request body")
    with internal_errors("Failed to unlock item"):
        remaining = services.users.unlock_inventory_item(identity.uid, payload.itemId, payload.cost)
    return {"message": "Item unlocked successfully", "SpendablePoints": remaining}


@router.get("/users/customisation")
def get_customisation(identity: Identity = Depends(current_identity),
                      services: Services = Depends(get_services)):
    with internal_errors("Failed to fetch customisation data"):
        return services.users.get_customisation(identity.uid)


@router.patch("/users/customisation")
def update_customisation(payload: CustomisationUpdate,
                         identity: Identity = Depends(current_identity),
                         services: Services = Depends(get_services)):
    with internal_errors("Failed to update customisation"):
        updated = services.users.update_customisation(
            identity.uid, payload.model_dump(exclude_unset=True)
        )
    if not updated:
        return {"message": "No customisation fields provided for update", "updatedFields": []}
    return {"message": "Customisation updated successfully", "updatedFields": updated}


@router.post("/users/init-fields")
def init_fields(payload: Optional[InitFieldsRequest] = None,
                identity: Identity = Depends(current_identity),
                services: Services = Depends(get_services)):
    with internal_errors("Failed to run batch update job"):
        if not services.users.is_admin(identity.uid):
            raise forbidden("Admin role required")
        logger.info("Default field initialisation requested by %s", identity.uid)
        count = services.users.init_fields(reset=bool(payload and payload.reset))
    return {"message": f"Successfully processed and updated {count} user documents."}


@router.get("/users/{user_id}")
def get_user(user_id: str,
             identity: Identity = Depends(current_identity),
             services: Services = Depends(get_services)):
    if user_id != identity.uid:
        raise forbidden("Cannot access other user data")
    with internal_errors("Failed to fetch user data"):
        return services.users.get(user_id)


# ---------- Uploads ----------

@router.post("/upload/image")
def upload(image: Optional[UploadFile] = File(None),
           identity: Identity = Depends(current_identity),
           services: Services = Depends(get_services)):
    with internal_errors("Failed to upload image"):
        url = upload_image(services.blobs, image, identity.uid, services.settings.max_upload_bytes)
    return {"message": "Image uploaded successfully!", "imageUrl": url}


# ---------- Health ----------

@router.get("/health")
def health():
    return {
        "status": "ok",
        "uptime": round(time.monotonic() - STARTED_AT, 1),
        "env": os.getenv("ENVIRONMENT", "production"),
    }


def database_status(request: Request):
    store: DocumentStore = request.app.state.services.store
    resp = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "transactions": "sessions" if store.supports_sessions else "embedded lock",
        "collections": [],
    }
    try:
        resp["collections"] = store.db.list_collection_names()[:10]
        resp["database"] = "✅ Connected & Working"
        resp["connection_status"] = "Connected"
    except Exception as e:
        resp["database"] = f"⚠️ Connected but error: {str(e)[:80]}"
    return resp


# ---------- App factory ----------

def _error_response(status_code: int, error: str, details: Optional[str] = None) -> JSONResponse:
    body = {"error": error}
    if details:
        body["details"] = details
    return JSONResponse(status_code=status_code, content=body)


def create_app(settings: Optional[Settings] = None,
               store: Optional[DocumentStore] = None,
               verifier: Optional[IdentityVerifier] = None,
               blobs: Optional[BlobStore] = None) -> FastAPI:
    """Build the API. Collaborators that are not passed in are created at startup."""
    settings = settings or Settings.from_env()
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal store, verifier, blobs
        if app.state.services is None:
            store = store or connect(settings)
            if verifier is None or blobs is None:
                firebase = initialize_firebase(settings)
                verifier = verifier or FirebaseIdentityVerifier(firebase)
                blobs = blobs or FirebaseBlobStore(firebase)
            app.state.services = Services(settings, store, verifier, blobs)
        yield

    app = FastAPI(title="Campus Quest API", lifespan=lifespan)
    app.state.services = None
    if store is not None and verifier is not None and blobs is not None:
        app.state.services = Services(settings, store, verifier, blobs)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        if exc.status_code < 500:
            logger.info("%s %s rejected: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return _error_response(400, "Invalid request", str(exc.errors()))

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return _error_response(exc.status_code, str(exc.detail))

    @app.get("/")
    def root():
        return {"message": "Campus Quest API running"}

    app.add_api_route("/test", database_status, methods=["GET"])
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
