# classes/admin_service.py

import json

from sqlalchemy import func, or_, select

from classes import settings
from classes.auth import AuthUser
from classes.base_utils import ApiError, BaseUtils, escape_like, paginate, pagination_block, utcnow
from classes.db_connection import SupabaseStorage
from classes.entities import (
    AdminAudit,
    AdminEmail,
    AiFeedback,
    AiLearningSession,
    Design,
    Profile,
    TrainingExample,
)
from classes.generation_service import extract_keywords
from classes.settings import logger

FEEDBACK_STATUSES = ("pending", "accepted", "rejected", "all")
DECISIONS = {"accept": "accepted", "reject": "rejected"}
ADMIN_ACCESS_OPS = ("add", "remove", "promote", "demote")
MAX_SEARCH_LEN = 100


def _iso(value):
    return value.isoformat() if value else None


def feedback_to_dict(fb: AiFeedback) -> dict:
    return {
        "id": fb.id,
        "user_id": fb.user_id,
        "user_email": fb.user_email,
        "template": fb.template,
        "design_id": fb.design_id,
        "design_prompt": fb.design_prompt,
        "generated_code": fb.generated_code,
        "quality_score": fb.quality_score,
        "quality_label": fb.quality_label,
        "feedback_text": fb.feedback_text,
        "review_status": fb.review_status,
        "reviewed_by": fb.reviewed_by,
        "reviewed_at": _iso(fb.reviewed_at),
        "generation_time_ms": fb.generation_time_ms,
        "tokens_used": fb.tokens_used,
        "created_at": _iso(fb.created_at),
    }


def _review_block(fb: AiFeedback) -> dict:
    return {
        "id": fb.id,
        "review_status": fb.review_status,
        "reviewed_by": fb.reviewed_by,
        "reviewed_at": _iso(fb.reviewed_at),
    }


class AdminService(BaseUtils):
    def __init__(self, session_factory, storage: SupabaseStorage | None = None):
        self.SessionFactory = session_factory
        self.storage = storage

    def admin_health(self, admin: AuthUser) -> dict:
        return {
            "admin": True,
            "email": admin.email,
            "timestamp": utcnow().isoformat(),
            "message": "Admin access verified",
        }

    # -----------------------
    # Feedback review
    # -----------------------

    def list_feedback(self, status="pending", search=None, page=None, limit=None) -> dict:
        status = (status or "pending").lower()
        if status not in FEEDBACK_STATUSES:
            raise ApiError(400, f"status must be one of {', '.join(FEEDBACK_STATUSES)}", "invalid_status")
        page, limit, offset = paginate(page, limit, default_limit=20, max_limit=100)
        search = (search or "").strip()[:MAX_SEARCH_LEN]

        filters = []
        if status != "all":
            filters.append(AiFeedback.review_status == status)
        if search:
            pattern = f"%{escape_like(search)}%"
            filters.append(or_(
                AiFeedback.user_email.ilike(pattern, escape="\\"),
                AiFeedback.design_prompt.ilike(pattern, escape="\\"),
                AiFeedback.template.ilike(pattern, escape="\\"),
                AiFeedback.feedback_text.ilike(pattern, escape="\\"),
            ))

        session = self._session()
        try:
            total = session.scalar(select(func.count()).select_from(AiFeedback).where(*filters)) or 0
            rows = session.scalars(
                select(AiFeedback)
                .where(*filters)
                .order_by(AiFeedback.created_at.desc())
                .offset(offset)
                .limit(limit)
            ).all()
        finally:
            session.close()

        logger.info(f"[admin][feedback-list] status={status} search={bool(search)} count={len(rows)} total={total}")
        return {
            "ok": True,
            "items": [feedback_to_dict(fb) for fb in rows],
            "pagination": pagination_block(page, limit, total),
        }

    def _append_curated_line(self, line: str) -> str | None:
        if self.storage is None:
            logger.warning("[admin][feedback-decide] No storage configured; curated JSONL not updated")
            return None
        for path in (f"{settings.CURATED_PREFIX}/approved.jsonl", settings.CURATED_GLOBAL_PATH):
            try:
                self.storage.append_line(path, line)
            except Exception as e:
                # the training example row is the source of truth
                logger.warning(f"[admin][feedback-decide] JSONL append failed for {path}: {e}")
        return settings.CURATED_GLOBAL_PATH

    def decide_feedback(self, admin: AuthUser, feedback_id, decision, tags=None, reason=None) -> dict:
        if not feedback_id or decision not in DECISIONS:
            raise ApiError(400, "feedback_id and decision required", "bad_request")

        session = self._session()
        try:
            fb = session.get(AiFeedback, str(feedback_id))
            if fb is None:
                raise ApiError(404, "Feedback not found", "not_found")

            if fb.review_status != "pending":
                return {"ok": True, "message": f"Feedback already {fb.review_status}", "feedback": _review_block(fb)}

            promoted_id = None
            curated_line = None
            if decision == "accept":
                example_tags = [str(t) for t in tags] if isinstance(tags, list) and tags else ["admin-approved"]
                example_tags += ["origin:feedback", f"feedback_id:{fb.id}"]

                example = session.scalars(
                    select(TrainingExample).where(TrainingExample.source_feedback_id == fb.id)
                ).one_or_none()
                if example is None:
                    example = TrainingExample(source_feedback_id=fb.id)
                    session.add(example)
                example.template = fb.template
                example.input_prompt = fb.design_prompt
                example.generated_code = fb.generated_code
                example.quality_score = fb.quality_score
                example.quality_label = "good" if (fb.quality_score or 0) >= 4 else "bad"
                example.tags = example_tags
                example.created_by = admin.id
                example.active = True
                session.flush()
                promoted_id = example.id

                curated_line = json.dumps({
                    "template": fb.template or "general",
                    "input_prompt": fb.design_prompt,
                    "generated_code": fb.generated_code,
                    "quality_score": fb.quality_score,
                    "tags": example_tags,
                })

            fb.review_status = DECISIONS[decision]
            fb.reviewed_by = admin.email
            fb.reviewed_at = utcnow()

            session.add(AdminAudit(
                actor_email=admin.email,
                action="admin_feedback_decide",
                details={
                    "feedback_id": fb.id,
                    "decision": decision,
                    "reason": reason,
                    "promoted_example_id": promoted_id,
                },
            ))
            session.commit()
            logger.info(f"[admin][feedback-decide] requester={admin.email} id={fb.id} decision={decision}")

            # JSONL mirrors committed rows only
            curated_path = self._append_curated_line(curated_line) if curated_line else None

            return {
                "ok": True,
                "feedback": _review_block(fb),
                "promoted_example_id": promoted_id,
                "curated_object_path": curated_path,
            }
        finally:
            session.close()

    # -----------------------
    # Admin access
    # -----------------------

    def list_admin_access(self) -> dict:
        session = self._session()
        try:
            listed = session.scalars(select(AdminEmail).order_by(AdminEmail.email)).all()
            profiles = session.scalars(
                select(Profile).where(Profile.is_admin.is_(True)).order_by(Profile.created_at.desc())
            ).all()
        finally:
            session.close()

        return {
            "ok": True,
            "adminsFromTable": [{"email": a.email, "addedAt": _iso(a.created_at)} for a in listed],
            "adminsFromProfiles": [{
                "id": p.id,
                "email": p.email,
                "isAdmin": p.is_admin,
                "isPaid": p.is_paid,
                "createdAt": _iso(p.created_at),
            } for p in profiles],
        }

    def update_admin_access(self, admin: AuthUser, email, op) -> dict:
        email = str(email or "").strip().lower()
        op = str(op or "").strip().lower()
        if not email:
            raise ApiError(400, "email is required", "missing_email")
        if op not in ADMIN_ACCESS_OPS:
            raise ApiError(400, "op must be add|remove|promote|demote", "invalid_op")

        session = self._session()
        try:
            if op == "add":
                if session.get(AdminEmail, email) is None:
                    session.add(AdminEmail(email=email))
                message = f"Added {email} to admin_emails"
            elif op == "remove":
                row = session.get(AdminEmail, email)
                if row is not None:
                    session.delete(row)
                message = f"Removed {email} from admin_emails"
            else:
                is_admin = op == "promote"
                rows = session.scalars(select(Profile).where(func.lower(Profile.email) == email)).all()
                for profile in rows:
                    profile.is_admin = is_admin
                message = (f"Promoted {email} to admin in profiles" if is_admin
                           else f"Demoted {email} from admin in profiles")

            session.add(AdminAudit(
                actor_email=admin.email,
                action="admin_access_update",
                details={"email": email, "op": op},
            ))
            session.commit()
        finally:
            session.close()

        logger.info(f"[admin][access-update] requester={admin.email} {message}")
        return {"ok": True, "message": message}

    # -----------------------
    # Manual teaching
    # -----------------------

    def teach(self, admin: AuthUser, name, code, description=None, keywords=None,
              prompt=None, template=None) -> dict:
        """
        Store a hand-written pattern as an active, good-quality training example.
        It is served from the knowledge base on the next generation.
        """
        name = str(name or "").strip()
        code = str(code or "").strip()
        if not name or not code:
            raise ApiError(400, "Pattern name and code are required", "validation_error")
        description = str(description or "").strip() or f"AI learned pattern: {name}"
        prompt = str(prompt or "").strip() or description

        if isinstance(keywords, str):
            keywords = keywords.split(",")
        tags = []
        for k in list(keywords or []) + extract_keywords(f"{prompt} {description}"):
            k = str(k).strip().lower()
            if k and ":" not in k and k not in tags:
                tags.append(k)
        tags.append("origin:manual")

        session = self._session()
        try:
            exists = session.scalars(
                select(TrainingExample.id).where(
                    func.lower(TrainingExample.pattern_name) == name.lower(),
                    TrainingExample.active.is_(True),
                )
            ).first()
            if exists is not None:
                raise ApiError(409, "Pattern name already exists", "pattern_exists")

            example = TrainingExample(
                pattern_name=name,
                description=description,
                template=template or None,
                input_prompt=prompt,
                generated_code=code,
                quality_score=5,
                quality_label="good",
                tags=tags,
                created_by=admin.id,
                active=True,
            )
            session.add(example)
            session.flush()
            session.add(AdminAudit(
                actor_email=admin.email,
                action="admin_teach",
                details={"example_id": example.id, "pattern_name": name},
            ))
            session.commit()
        finally:
            session.close()

        logger.info(f"[admin][teach] requester={admin.email} pattern={name!r} keywords={len(tags) - 1}")
        return {
            "ok": True,
            "message": f"Pattern '{name}' added to the knowledge base",
            "example": {
                "id": example.id,
                "pattern_name": name,
                "description": description,
                "keywords": tags[:-1],
            },
        }

    # -----------------------
    # Users & stats
    # -----------------------

    def list_users(self, page=None, limit=None, search=None) -> dict:
        page, limit, offset = paginate(page, limit, default_limit=20, max_limit=100)
        search = (search or "").strip()[:MAX_SEARCH_LEN]

        filters = []
        if search:
            filters.append(Profile.email.ilike(f"%{escape_like(search)}%", escape="\\"))

        session = self._session()
        try:
            total = session.scalar(select(func.count()).select_from(Profile).where(*filters)) or 0
            rows = session.scalars(
                select(Profile)
                .where(*filters)
                .order_by(Profile.created_at.desc())
                .offset(offset)
                .limit(limit)
            ).all()
        finally:
            session.close()

        users = [{
            "id": p.id,
            "email": p.email,
            "is_paid": p.is_paid,
            "is_active": p.is_active,
            "is_admin": p.is_admin,
            "subscription_plan": p.subscription_plan,
            "payment_date": _iso(p.payment_date),
            "created_at": _iso(p.created_at),
        } for p in rows]
        return {"ok": True, "users": users, "pagination": pagination_block(page, limit, total)}

    def dashboard_stats(self) -> dict:
        session = self._session()
        try:
            users = session.scalar(select(func.count()).select_from(Profile)) or 0
            paid_users = session.scalar(
                select(func.count()).select_from(Profile).where(Profile.is_paid.is_(True), Profile.is_active.is_(True))
            ) or 0
            designs = session.scalar(select(func.count()).select_from(Design)) or 0
            sessions = session.scalar(select(func.count()).select_from(AiLearningSession)) or 0
            pending = session.scalar(
                select(func.count()).select_from(AiFeedback).where(AiFeedback.review_status == "pending")
            ) or 0
            avg_rating = session.scalar(
                select(func.avg(AiLearningSession.user_feedback)).where(AiLearningSession.user_feedback.is_not(None))
            )
        finally:
            session.close()

        stats = {
            "ok": True,
            "totals": {
                "users": users,
                "paidUsers": paid_users,
                "designs": designs,
                "generationSessions": sessions,
                "pendingFeedback": pending,
            },
            "averageRating": round(float(avg_rating), 2) if avg_rating is not None else 0,
            "config": {
                "bucket": settings.SUPABASE_STORAGE_BUCKET_TRAINING,
            },
        }
        self.color_print(f"ADMIN-DASHBOARD-STATS users={users} designs={designs} sessions={sessions}", color="green")
        return stats
