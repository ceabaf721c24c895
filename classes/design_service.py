# classes/design_service.py

from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError

from classes.auth import AuthUser
from classes.base_utils import ApiError, BaseUtils, escape_like, paginate, pagination_block
from classes.entities import Design
from classes.settings import logger

SORT_FIELDS = {"name": Design.name, "created_at": Design.created_at}


def _design_summary(design: Design, include_code: bool = False) -> dict:
    out = {
        "id": design.id,
        "name": design.name,
        "prompt": design.prompt,
        "created_at": design.created_at.isoformat() if design.created_at else None,
    }
    if include_code:
        out["code"] = design.code
    return out


class DesignService(BaseUtils):
    def __init__(self, session_factory):
        self.SessionFactory = session_factory

    def save_design(self, user: AuthUser, name, prompt, code) -> dict:
        if not name or not code:
            raise ApiError(400, "Name and code are required fields", "validation_error")
        if not isinstance(name, str) or not name.strip():
            raise ApiError(400, "Valid design name is required", "validation_error")
        if not isinstance(code, str) or not code.strip():
            raise ApiError(400, "Valid OpenSCAD code is required", "validation_error")

        prompt = prompt.strip() if isinstance(prompt, str) and prompt.strip() else None

        session = self._session()
        try:
            design = Design(user_id=user.id, name=name.strip(), prompt=prompt, code=code.strip())
            session.add(design)
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise ApiError(409, "A design with this name already exists", "duplicate_name") from e
            logger.info(f"save_design: user={user.id} design={design.id}")
            return {"message": "Design saved successfully", "design": _design_summary(design)}
        finally:
            session.close()

    def list_designs(self, user: AuthUser, page=None, limit=None, search=None, sort=None, order=None) -> dict:
        page, limit, offset = paginate(page, limit, default_limit=20, max_limit=50)
        search = (search or "").strip()
        sort_column = SORT_FIELDS.get(sort or "created_at", Design.created_at)
        ascending = (order or "").lower() == "asc"

        filters = [Design.user_id == user.id]
        if search:
            pattern = f"%{escape_like(search)}%"
            filters.append(or_(
                Design.name.ilike(pattern, escape="\\"),
                Design.prompt.ilike(pattern, escape="\\"),
            ))

        session = self._session()
        try:
            total = session.scalar(select(func.count()).select_from(Design).where(*filters)) or 0
            rows = session.scalars(
                select(Design)
                .where(*filters)
                .order_by(sort_column.asc() if ascending else sort_column.desc())
                .offset(offset)
                .limit(limit)
            ).all()
        finally:
            session.close()

        return {
            "designs": [_design_summary(d, include_code=True) for d in rows],
            "pagination": pagination_block(page, limit, total),
            "search": search or None,
        }

    def _owned_design(self, session, user: AuthUser, design_id) -> Design:
        design = session.scalars(
            select(Design).where(Design.id == str(design_id), Design.user_id == user.id)
        ).one_or_none()
        if design is None:
            raise ApiError(404, "Design not found or access denied", "not_found")
        return design

    def get_design(self, user: AuthUser, design_id) -> dict:
        if not design_id:
            raise ApiError(400, "Design ID is required", "validation_error")
        session = self._session()
        try:
            return {"design": _design_summary(self._owned_design(session, user, design_id), include_code=True)}
        finally:
            session.close()

    def delete_design(self, user: AuthUser, design_id) -> dict:
        if not design_id:
            raise ApiError(400, "Design ID is required", "validation_error")

        session = self._session()
        try:
            design = self._owned_design(session, user, design_id)
            deleted = {"id": design.id, "name": design.name}
            session.delete(design)
            session.commit()
            logger.info(f"delete_design: user={user.id} design={deleted['id']}")
            return {"message": "Design deleted successfully", "deletedDesign": deleted}
        finally:
            session.close()
