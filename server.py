from functools import lru_cache
from typing import Any, List, Optional

from fastapi import Depends, FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from starlette.exceptions import HTTPException as StarletteHTTPException

from classes import settings
from classes.admin_service import AdminService
from classes.app_config import GENERATION
from classes.auth import AuthUser, Authenticator, parse_bearer
from classes.base_utils import ApiError
from classes.db_connection import DbConnection, SupabaseStorage, build_supabase_client
from classes.design_service import DesignService
from classes.feedback_service import FeedbackService
from classes.generation_service import GenerationService
from classes.llm_client import ChatLlmClient
from classes.payment_service import PaymentService
from classes.promo_service import PromoService
from classes.public_config import CACHE_CONTROL, get_public_config
from classes.settings import logger
from classes.template_catalog import list_templates, read_template_file

app = FastAPI(title=settings.APP_NAME, version=settings.APP_VERSION)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "Stripe-Signature"],
)


# -----------------------
# Error envelope
# -----------------------

@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    if exc.status >= 500:
        logger.error(f"{request.method} {request.url.path} -> {exc.status} {exc.code}: {exc.message}")
    return JSONResponse(status_code=exc.status, content=exc.to_body())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"error": "Invalid request body", "code": "validation_error"})


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content=ApiError(exc.status_code, str(exc.detail)).to_body())


@app.exception_handler(IntegrityError)
async def integrity_error_handler(request: Request, exc: IntegrityError):
    logger.warning(f"{request.method} {request.url.path} -> integrity error: {exc.orig}")
    return JSONResponse(status_code=409, content={"error": "Resource already exists", "code": "conflict"})


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"{request.method} {request.url.path} -> unhandled error")
    return JSONResponse(status_code=500, content={"error": "Internal server error", "code": "internal_error"})


# -----------------------
# Dependencies
# -----------------------

@lru_cache(maxsize=1)
def get_session_factory():
    return DbConnection().build_db_session_factory()


@lru_cache(maxsize=1)
def get_supabase():
    return build_supabase_client()


def get_storage(supabase=Depends(get_supabase)) -> SupabaseStorage:
    return SupabaseStorage(supabase, settings.SUPABASE_STORAGE_BUCKET_TRAINING)


def get_llm_factory():
    def _factory() -> ChatLlmClient:
        return ChatLlmClient(
            settings.GENERATION_MODEL or GENERATION["model"],
            timeout=settings.LLM_TIMEOUT,
            max_output_tokens=GENERATION.get("max_output_tokens"),
            temperature=GENERATION.get("temperature"),
        )
    return _factory


def get_authenticator(supabase=Depends(get_supabase), session_factory=Depends(get_session_factory)) -> Authenticator:
    return Authenticator(supabase, session_factory)


def current_user(request: Request, auth: Authenticator = Depends(get_authenticator)) -> AuthUser:
    return auth.resolve_user(parse_bearer(request.headers))


def paid_user(user: AuthUser = Depends(current_user), auth: Authenticator = Depends(get_authenticator)) -> AuthUser:
    auth.require_paid(user)
    return user


def admin_user(user: AuthUser = Depends(current_user), auth: Authenticator = Depends(get_authenticator)) -> AuthUser:
    return auth.require_admin(user)


# -----------------------
# Request bodies
# -----------------------

class DesignIn(BaseModel):
    name: Optional[Any] = None
    prompt: Optional[Any] = None
    code: Optional[Any] = None


class GenerateIn(BaseModel):
    prompt: Optional[Any] = None
    name: Optional[Any] = None


class FeedbackIn(BaseModel):
    sessionId: Optional[str] = None
    feedback: Optional[Any] = None
    finalCode: Optional[str] = None
    correctionType: Optional[str] = None
    correctionDescription: Optional[str] = None


class CheckoutIn(BaseModel):
    email: Optional[Any] = None
    plan: Optional[str] = "monthly"
    userId: Optional[str] = None
    promoCode: Optional[str] = None


class VerifyCheckoutIn(BaseModel):
    session_id: Optional[str] = None


class PromoValidateIn(BaseModel):
    code: Optional[str] = None


class PromoIn(BaseModel):
    code: Optional[str] = None
    description: Optional[str] = None
    discount_percent: Optional[Any] = None
    expires_at: Optional[str] = None
    active: Optional[bool] = None


class FeedbackDecisionIn(BaseModel):
    feedback_id: Optional[str] = None
    decision: Optional[str] = None
    tags: Optional[List[str]] = None
    reason: Optional[str] = None


class AdminAccessIn(BaseModel):
    email: Optional[str] = None
    op: Optional[str] = None


class TeachIn(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    keywords: Optional[Any] = None
    prompt: Optional[str] = None
    code: Optional[str] = None
    template: Optional[str] = None


# -----------------------
# Public
# -----------------------

@app.get("/api/health")
def health():
    return {"status": "ok", "app": settings.APP_NAME, "version": settings.APP_VERSION}


@app.get("/api/public-config")
def public_config(response: Response):
    response.headers["Cache-Control"] = CACHE_CONTROL
    return get_public_config()


@app.get("/api/templates")
def templates():
    return list_templates(settings.TEMPLATES_DIR)


@app.get("/api/templates/{template_id}/{filename}")
def template_file(template_id: str, filename: str):
    return PlainTextResponse(read_template_file(template_id, filename, settings.TEMPLATES_DIR))


@app.post("/api/promo/validate")
def validate_promo(body: PromoValidateIn, session_factory=Depends(get_session_factory)):
    return PromoService(session_factory).validate_promo_code(body.code)


# -----------------------
# Designs
# -----------------------

@app.post("/api/designs", status_code=201)
def save_design(body: DesignIn, user: AuthUser = Depends(current_user),
                session_factory=Depends(get_session_factory)):
    return DesignService(session_factory).save_design(user, body.name, body.prompt, body.code)


@app.get("/api/designs")
def list_designs(page: Optional[str] = None, limit: Optional[str] = None, search: Optional[str] = None,
                 sort: Optional[str] = None, order: Optional[str] = None,
                 user: AuthUser = Depends(current_user), session_factory=Depends(get_session_factory)):
    return DesignService(session_factory).list_designs(user, page, limit, search, sort, order)


@app.get("/api/designs/{design_id}")
def get_design(design_id: str, user: AuthUser = Depends(current_user),
               session_factory=Depends(get_session_factory)):
    return DesignService(session_factory).get_design(user, design_id)


@app.delete("/api/designs/{design_id}")
def delete_design(design_id: str, user: AuthUser = Depends(current_user),
                  session_factory=Depends(get_session_factory)):
    return DesignService(session_factory).delete_design(user, design_id)


# -----------------------
# Generation & feedback
# -----------------------

@app.post("/api/generate")
def generate(body: GenerateIn, user: AuthUser = Depends(paid_user),
             session_factory=Depends(get_session_factory), llm_factory=Depends(get_llm_factory)):
    return GenerationService(session_factory, llm_factory).generate_design(user, body.prompt, body.name)


@app.post("/api/feedback")
def feedback(body: FeedbackIn, user: AuthUser = Depends(paid_user),
             session_factory=Depends(get_session_factory)):
    return FeedbackService(session_factory).record_feedback(
        user,
        body.sessionId,
        feedback=body.feedback,
        final_code=body.finalCode,
        correction_type=body.correctionType,
        correction_description=body.correctionDescription,
    )


@app.get("/api/user-patterns")
def user_patterns(user: AuthUser = Depends(current_user), session_factory=Depends(get_session_factory)):
    return FeedbackService(session_factory).analyze_user_patterns(user)


# -----------------------
# Payments
# -----------------------

@app.post("/api/checkout-session")
def create_checkout_session(body: CheckoutIn, session_factory=Depends(get_session_factory)):
    return PaymentService(session_factory).create_checkout_session(
        body.email, body.plan, user_id=body.userId, promo_code=body.promoCode,
    )


@app.post("/api/stripe-webhook")
async def stripe_webhook(request: Request, session_factory=Depends(get_session_factory)):
    payload = await request.body()
    return PaymentService(session_factory).handle_webhook(payload, request.headers.get("stripe-signature"))


@app.get("/api/payment-status")
def payment_status(user: AuthUser = Depends(current_user), session_factory=Depends(get_session_factory)):
    return PaymentService(session_factory).check_payment_status(user)


@app.post("/api/profile")
def ensure_profile(user: AuthUser = Depends(current_user), session_factory=Depends(get_session_factory)):
    return PaymentService(session_factory).ensure_profile(user)


@app.post("/api/verify-checkout")
def verify_checkout(body: VerifyCheckoutIn, user: AuthUser = Depends(current_user),
                    session_factory=Depends(get_session_factory)):
    return PaymentService(session_factory).verify_checkout_session(user, body.session_id)


# -----------------------
# Admin
# -----------------------

@app.get("/api/admin/health")
def admin_health(admin: AuthUser = Depends(admin_user), session_factory=Depends(get_session_factory)):
    return AdminService(session_factory).admin_health(admin)


@app.get("/api/admin/feedback")
def admin_feedback_list(status: Optional[str] = "pending", search: Optional[str] = None,
                        page: Optional[str] = None, limit: Optional[str] = None,
                        admin: AuthUser = Depends(admin_user), session_factory=Depends(get_session_factory)):
    return AdminService(session_factory).list_feedback(status, search, page, limit)


@app.post("/api/admin/feedback/decide")
def admin_feedback_decide(body: FeedbackDecisionIn, admin: AuthUser = Depends(admin_user),
                          session_factory=Depends(get_session_factory), storage=Depends(get_storage)):
    return AdminService(session_factory, storage).decide_feedback(
        admin, body.feedback_id, body.decision, tags=body.tags, reason=body.reason,
    )


@app.get("/api/admin/users")
def admin_users(page: Optional[str] = None, limit: Optional[str] = None, search: Optional[str] = None,
                admin: AuthUser = Depends(admin_user), session_factory=Depends(get_session_factory)):
    return AdminService(session_factory).list_users(page, limit, search)


@app.get("/api/admin/stats")
def admin_stats(admin: AuthUser = Depends(admin_user), session_factory=Depends(get_session_factory)):
    return AdminService(session_factory).dashboard_stats()


@app.get("/api/admin/access")
def admin_access_list(admin: AuthUser = Depends(admin_user), session_factory=Depends(get_session_factory)):
    return AdminService(session_factory).list_admin_access()


@app.post("/api/admin/access")
def admin_access_update(body: AdminAccessIn, admin: AuthUser = Depends(admin_user),
                        session_factory=Depends(get_session_factory)):
    return AdminService(session_factory).update_admin_access(admin, body.email, body.op)


@app.post("/api/admin/teach", status_code=201)
def admin_teach(body: TeachIn, admin: AuthUser = Depends(admin_user),
                session_factory=Depends(get_session_factory)):
    return AdminService(session_factory).teach(
        admin, body.name, body.code, description=body.description, keywords=body.keywords,
        prompt=body.prompt, template=body.template,
    )


@app.get("/api/admin/promos")
def admin_list_promos(admin: AuthUser = Depends(admin_user), session_factory=Depends(get_session_factory)):
    return PromoService(session_factory).list_promo_codes()


@app.post("/api/admin/promos", status_code=201)
def admin_create_promo(body: PromoIn, admin: AuthUser = Depends(admin_user),
                       session_factory=Depends(get_session_factory)):
    return PromoService(session_factory).create_promo_code(
        body.code, body.discount_percent, description=body.description, expires_at=body.expires_at,
    )


@app.put("/api/admin/promos/{promo_id}")
def admin_update_promo(promo_id: str, body: PromoIn, admin: AuthUser = Depends(admin_user),
                       session_factory=Depends(get_session_factory)):
    return PromoService(session_factory).update_promo_code(promo_id, body.model_dump(exclude_unset=True))


@app.delete("/api/admin/promos/{promo_id}")
def admin_delete_promo(promo_id: str, admin: AuthUser = Depends(admin_user),
                       session_factory=Depends(get_session_factory)):
    return PromoService(session_factory).delete_promo_code(promo_id)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
