import asyncio
import logging
import time
from typing import Optional

from fastapi import Depends, FastAPI, File, HTTPException, Query, Request, UploadFile, status
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from postgrest.exceptions import APIError
from starlette.exceptions import HTTPException as StarletteHTTPException
from supabase import Client

from auth import (
    CurrentUser,
    create_access_token,
    get_app_settings,
    get_current_user,
    hash_password,
    require_role,
    verify_password,
)
from config import Settings, get_settings
from database import get_db
from schemas import (
    CategoryIn,
    CommentIn,
    LoginRequest,
    RegisterRequest,
    RoleUpdate,
    UmkmIn,
    normalize_role,
    storage_role,
)
from security import configure_security, login_rate_limit

logger = logging.getLogger(__name__)

MAX_PHOTO_BYTES = 5 * 1024 * 1024
RECENT_COMMENTS = 5
RATING_UPDATE_ATTEMPTS = 3


# Helpers

def to_int(value: Optional[str], fallback: Optional[int]) -> Optional[int]:
    """Parse a query string integer; blank or non-numeric values give the fallback."""
    try:
        return int(value) if value is not None and value.strip() else fallback
    except ValueError:
        return fallback


def serialize_user(row: dict) -> dict:
    return {
        "iduser": row.get("iduser"),
        "username": row.get("username"),
        "email": row.get("email"),
        "role": normalize_role(row.get("role")),
        "name": row.get("name"),
    }


def apply_rating(db: Client, umkm_id: int, rating: float) -> Optional[str]:
    """Fold one new rating into Umkm.rating/total_rating.

    The write is conditional on the total_rating value that was read, so two
    concurrent comments cannot both build on the same snapshot; the loser
    re-reads and tries again. Returns a warning message when the aggregate
    could not be updated.
    """
    for attempt in range(1, RATING_UPDATE_ATTEMPTS + 1):
        res = db.table("Umkm").select("rating, total_rating").eq("IDUmkm", umkm_id).limit(1).execute()
        if not res.data:
            return "Failed to read Umkm aggregate"
        observed = res.data[0].get("total_rating")
        current_avg = float(res.data[0].get("rating") or 0)
        current_count = int(observed or 0)
        new_count = current_count + 1
        new_avg = (current_avg * current_count + rating) / new_count
        query = db.table("Umkm").update({"rating": new_avg, "total_rating": new_count}).eq("IDUmkm", umkm_id)
        # NULL never compares equal, so an unset counter is matched with IS NULL
        if observed is None:
            query = query.is_("total_rating", "null")
        else:
            query = query.eq("total_rating", observed)
        updated = query.execute()
        if updated.data:
            return None
        logger.warning("Rating update for umkm %s lost a race (attempt %d)", umkm_id, attempt)
    return "Failed to update Umkm rating"


def validation_details(exc: RequestValidationError) -> list:
    # the rejected input can be inf/nan, which JSON cannot carry
    return [{k: v for k, v in err.items() if k != "input"} for err in exc.errors()]


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title="UMKM Directory API")
    app.state.settings = settings

    # Registered before the security middleware so 500s still get CORS and security headers
    @app.middleware("http")
    async def unhandled_errors(request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.exception("Unhandled error on %s %s", request.method, request.url.path)
            return JSONResponse({"error": "Internal server error"}, status_code=500)

    configure_security(app, settings)

    # Error bodies are always {"error": ...}
    @app.exception_handler(StarletteHTTPException)
    async def http_error(_request: Request, exc: StarletteHTTPException):
        return JSONResponse({"error": exc.detail}, status_code=exc.status_code, headers=getattr(exc, "headers", None))

    @app.exception_handler(RequestValidationError)
    async def validation_error(_request: Request, exc: RequestValidationError):
        return JSONResponse(
            {"error": "Invalid payload", "details": jsonable_encoder(validation_details(exc))},
            status_code=status.HTTP_400_BAD_REQUEST,
        )

    @app.exception_handler(APIError)
    async def store_error(_request: Request, exc: APIError):
        logger.error("Supabase error %s: %s", exc.code, exc.message)
        return JSONResponse({"error": exc.message or "Database error"}, status_code=500)

    register_routes(app)
    return app


def register_routes(app: FastAPI) -> None:

    @app.get("/health")
    def health():
        return {"ok": True}

    # Categories
    @app.get("/categories")
    def list_categories(db: Client = Depends(get_db)):
        res = db.table("Categories").select("IDCategories, name").order("name").execute()
        return {"data": res.data}

    @app.post("/categories", status_code=201)
    def create_category(payload: CategoryIn, db: Client = Depends(get_db), admin=Depends(require_role("admin"))):
        existing = db.table("Categories").select("IDCategories").eq("name", payload.name).limit(1).execute()
        if existing.data:
            raise HTTPException(409, "Category already exists")
        res = db.table("Categories").insert({"name": payload.name}).execute()
        return {"data": res.data[0]}

    # Umkm
    @app.get("/umkm")
    def list_umkm(
        q: Optional[str] = None,
        location: Optional[str] = None,
        category_id: Optional[str] = Query(None, alias="categoryId"),
        sort: str = "recommendation",
        limit: Optional[str] = None,
        page: Optional[str] = None,
        db: Client = Depends(get_db),
    ):
        limit = min(max(to_int(limit, 20), 1), 100)
        page = max(to_int(page, 1), 1)
        category = to_int(category_id, None)
        start = (page - 1) * limit

        query = db.table("Umkm").select("*", count="exact").eq("is_active", True)
        if q:
            query = query.ilike("name", f"%{q}%")
        if location:
            query = query.ilike("location", f"%{location}%")
        if category is not None:
            query = query.eq("categories", category)
        query = query.order("rating", desc=True)
        if sort != "rating":
            # recommendation: rating desc then total_rating desc
            query = query.order("total_rating", desc=True)
        res = query.range(start, start + limit - 1).execute()
        return {"data": res.data, "pagination": {"page": page, "limit": limit, "total": res.count or 0}}

    @app.post("/umkm", status_code=201)
    def create_umkm(payload: UmkmIn, db: Client = Depends(get_db), user: CurrentUser = Depends(require_role("user"))):
        category = db.table("Categories").select("IDCategories").eq("IDCategories", payload.categories).limit(1).execute()
        if not category.data:
            raise HTTPException(400, "Invalid categories: not found")
        doc = {
            "name": payload.name,
            "location": payload.location,
            "description": payload.description,
            "categories": payload.categories,
            "photo": str(payload.photo) if payload.photo else None,
            "user_id": user.id,
            "rating": 0,
            "total_rating": 0,
            "is_active": False,
        }
        res = db.table("Umkm").insert(doc).execute()
        logger.info("User %s submitted umkm %s", user.id, res.data[0].get("IDUmkm"))
        return {"data": res.data[0]}

    @app.get("/umkm/admin/pending")
    def pending_umkm(db: Client = Depends(get_db), admin=Depends(require_role("admin"))):
        res = db.table("Umkm").select("*").eq("is_active", False).order("IDUmkm").execute()
        return {"data": res.data}

    @app.get("/umkm/{umkm_id}")
    async def get_umkm(umkm_id: int, db: Client = Depends(get_db)):
        res = await run_in_threadpool(
            lambda: db.table("Umkm").select("*").eq("IDUmkm", umkm_id).limit(1).execute()
        )
        if not res.data:
            raise HTTPException(404, "Not found")
        umkm = res.data[0]

        comments, category = await asyncio.gather(
            run_in_threadpool(
                lambda: db.table("Comments")
                .select("IDComments, user, content, rating")
                .eq("umkm", umkm_id)
                .order("IDComments", desc=True)
                .limit(RECENT_COMMENTS)
                .execute()
            ),
            run_in_threadpool(
                lambda: db.table("Categories")
                .select("IDCategories, name")
                .eq("IDCategories", umkm.get("categories"))
                .limit(1)
                .execute()
            ),
        )
        return {
            "data": {
                **umkm,
                "category": category.data[0] if category.data else None,
                "recent_comments": comments.data,
            }
        }

    @app.post("/umkm/{umkm_id}/activate")
    def activate_umkm(umkm_id: int, db: Client = Depends(get_db), admin: CurrentUser = Depends(require_role("admin"))):
        res = db.table("Umkm").update({"is_active": True}).eq("IDUmkm", umkm_id).execute()
        if not res.data:
            raise HTTPException(500, f"Umkm {umkm_id} could not be activated")
        logger.info("Admin %s activated umkm %s", admin.id, umkm_id)
        return {"data": res.data[0]}

    # Comments
    @app.get("/umkm/{umkm_id}/comments")
    def list_comments(umkm_id: int, db: Client = Depends(get_db)):
        res = (
            db.table("Comments")
            .select("IDComments, user, umkm, content, rating")
            .eq("umkm", umkm_id)
            .order("IDComments", desc=True)
            .execute()
        )
        return {"data": res.data}

    @app.post("/umkm/{umkm_id}/comments", status_code=201)
    def add_comment(
        umkm_id: int,
        payload: CommentIn,
        db: Client = Depends(get_db),
        user: CurrentUser = Depends(get_current_user),
    ):
        umkm = db.table("Umkm").select("IDUmkm").eq("IDUmkm", umkm_id).limit(1).execute()
        if not umkm.data:
            raise HTTPException(404, "Not found")
        res = (
            db.table("Comments")
            .insert({"user": user.id, "umkm": umkm_id, "content": payload.content, "rating": payload.rating})
            .execute()
        )
        comment = res.data[0]

        # The comment is stored; aggregate failures only downgrade the response
        try:
            warning = apply_rating(db, umkm_id, payload.rating)
        except APIError as exc:
            logger.warning("Rating aggregate for umkm %s failed: %s", umkm_id, exc.message)
            warning = "Failed to update Umkm rating"
        if warning:
            logger.warning("Comment %s stored without aggregate update: %s", comment.get("IDComments"), warning)
            return {"data": comment, "warning": warning}
        return {"data": comment}

    # Auth
    @app.post("/auth/register", status_code=201)
    def register(payload: RegisterRequest, db: Client = Depends(get_db), settings: Settings = Depends(get_app_settings)):
        for column, value in (("username", payload.username), ("email", payload.email)):
            existing = db.table("User").select("iduser").eq(column, value).limit(1).execute()
            if existing.data:
                raise HTTPException(409, "username or email already exists")
        user_doc = {
            "username": payload.username,
            "name": payload.name,
            "email": payload.email,
            "password": hash_password(payload.password),
            "role": storage_role("user", settings.role_storage_case),
        }
        res = db.table("User").insert(user_doc).execute()
        user = serialize_user(res.data[0])
        logger.info("Registered user %s (%s)", user["iduser"], user["username"])
        return {"data": user}

    @app.post("/auth/login", dependencies=[Depends(login_rate_limit)])
    def login(payload: LoginRequest, db: Client = Depends(get_db), settings: Settings = Depends(get_app_settings)):
        query = db.table("User").select("iduser, username, email, password, role").limit(1)
        if payload.username:
            query = query.eq("username", payload.username)
        if payload.email:
            query = query.eq("email", payload.email)
        rows = query.execute().data
        user = rows[0] if rows else None
        if not user or not verify_password(payload.password, user.get("password") or ""):
            raise HTTPException(status_code=401, detail="Invalid credentials")
        role = normalize_role(user.get("role"))
        token = create_access_token(user["iduser"], role, settings)
        user_out = {"id": user["iduser"], "username": user.get("username"), "email": user.get("email"), "role": role}
        return {"token": token, "user": user_out}

    # Admin
    @app.patch("/admin/users/{user_id}/role")
    def update_user_role(
        user_id: int,
        payload: RoleUpdate,
        db: Client = Depends(get_db),
        settings: Settings = Depends(get_app_settings),
        admin: CurrentUser = Depends(require_role("admin")),
    ):
        res = (
            db.table("User")
            .update({"role": storage_role(payload.role, settings.role_storage_case)})
            .eq("iduser", user_id)
            .execute()
        )
        if not res.data:
            raise HTTPException(404, "User not found")
        row = res.data[0]
        logger.info("Admin %s set role of user %s to %s", admin.id, user_id, payload.role)
        return {
            "data": {
                "iduser": row.get("iduser"),
                "username": row.get("username"),
                "email": row.get("email"),
                "role": normalize_role(row.get("role")),
            }
        }

    # Users
    @app.post("/users/me/photo")
    async def upload_photo(
        file: Optional[UploadFile] = File(None),
        db: Client = Depends(get_db),
        settings: Settings = Depends(get_app_settings),
        user: CurrentUser = Depends(get_current_user),
    ):
        if file is None:
            raise HTTPException(400, "file is required")
        content = await file.read(MAX_PHOTO_BYTES + 1)
        if len(content) > MAX_PHOTO_BYTES:
            raise HTTPException(status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, "File too large")

        filename = file.filename or ""
        ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else "jpg"
        content_type = file.content_type or ("image/png" if ext == "png" else "image/jpeg")
        path = f"user-{user.id}/{int(time.time() * 1000)}.{ext}"

        bucket = db.storage.from_(settings.avatar_bucket)
        try:
            await run_in_threadpool(
                bucket.upload, path, content, {"content-type": content_type, "upsert": "true"}
            )
        except Exception as e:
            logger.error("Avatar upload for user %s failed: %s", user.id, e)
            raise HTTPException(500, str(e))
        public_url = bucket.get_public_url(path)

        await run_in_threadpool(
            lambda: db.table("User").update({"photoprofile": public_url}).eq("iduser", user.id).execute()
        )
        return {"url": public_url}


app = create_app()

if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    port = get_settings().port
    # forwarded headers are handled by the app's ProxyHeadersMiddleware
    uvicorn.run(app, host="0.0.0.0", port=port, proxy_headers=False)
