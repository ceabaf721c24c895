# classes/feedback_service.py

from collections import Counter

from sqlalchemy import select

from classes.auth import AuthUser
from classes.base_utils import ApiError, BaseUtils
from classes.entities import AiCorrection, AiFeedback, AiLearningSession, Profile
from classes.generation_service import extract_keywords
from classes.settings import logger

QUALITY_LABELS = {1: "unusable", 2: "poor", 3: "ok", 4: "good", 5: "excellent"}


def parse_feedback(feedback) -> tuple:
    """
    Accepts a bare rating (number) or {rating|quality_score, quality_label, text}.
    Returns (rating, quality_label, feedback_text); rating is None when absent.
    """
    rating = quality_label = feedback_text = None
    if isinstance(feedback, dict):
        rating = feedback.get("rating", feedback.get("quality_score"))
        quality_label = feedback.get("quality_label")
        feedback_text = feedback.get("text")
    elif isinstance(feedback, (int, float)) and not isinstance(feedback, bool):
        rating = feedback

    if rating is not None:
        if isinstance(rating, bool) or not isinstance(rating, (int, float)) \
                or int(rating) != rating or not 1 <= rating <= 5:
            raise ApiError(400, "Rating must be an integer between 1 and 5", "invalid_rating")
        rating = int(rating)
        quality_label = quality_label or QUALITY_LABELS.get(rating, "unknown")
    return rating, quality_label, feedback_text


def _average_rating(sessions) -> float:
    rated = [s.user_feedback for s in sessions if s.user_feedback]
    return sum(rated) / len(rated) if rated else 0


class FeedbackService(BaseUtils):
    def __init__(self, session_factory):
        self.SessionFactory = session_factory

    def record_feedback(self, user: AuthUser, session_id, feedback=None, final_code=None,
                        correction_type=None, correction_description=None) -> dict:
        if not session_id:
            raise ApiError(400, "Session ID is required", "validation_error")

        rating, quality_label, feedback_text = parse_feedback(feedback)

        session = self._session()
        try:
            learning = session.scalars(
                select(AiLearningSession).where(
                    AiLearningSession.session_id == str(session_id),
                    AiLearningSession.user_id == user.id,
                )
            ).one_or_none()
            if learning is None:
                raise ApiError(404, "Session not found", "not_found")

            if rating is not None:
                learning.user_feedback = rating
            if feedback_text:
                learning.feedback_text = feedback_text
            if final_code:
                learning.final_code = final_code
                learning.was_modified = True

            if rating is not None:
                profile = session.get(Profile, user.id)
                session.add(AiFeedback(
                    user_id=user.id,
                    user_email=(profile.email if profile else user.email) or "unknown@example.com",
                    session_id=learning.id,
                    template=learning.design_category,
                    design_id=learning.session_id,
                    design_prompt=learning.user_prompt,
                    generated_code=learning.generated_code,
                    quality_score=rating,
                    quality_label=quality_label,
                    feedback_text=feedback_text,
                    review_status="pending",
                    generation_time_ms=learning.generation_time_ms,
                    tokens_used=learning.tokens_used,
                ))

            if final_code and final_code != learning.generated_code and correction_type:
                session.add(AiCorrection(
                    session_id=learning.id,
                    user_id=user.id,
                    original_code=learning.generated_code,
                    corrected_code=final_code,
                    correction_type=str(correction_type),
                    description=correction_description or None,
                ))

            session.commit()
            logger.info(f"record_feedback: session={session_id} rating={rating}")
        finally:
            session.close()

        return {"success": True, "message": "Feedback recorded successfully", "sessionId": session_id}

    def analyze_user_patterns(self, user: AuthUser) -> dict:
        session = self._session()
        try:
            designs = session.scalars(
                select(AiLearningSession)
                .where(AiLearningSession.user_id == user.id)
                .order_by(AiLearningSession.created_at.desc())
            ).all()
        finally:
            session.close()

        word_counts = Counter()
        for d in designs:
            word_counts.update(extract_keywords(d.user_prompt))

        analytics = {
            "totalDesigns": len(designs),
            "correctionsCount": sum(1 for d in designs if d.has_corrections),
            "averageRating": _average_rating(designs),
            "commonKeywords": [w for w, _ in word_counts.most_common(10)],
            "learningTrends": [],
        }

        if designs:
            recent, older = designs[:5], designs[5:10]
            trends = analytics["learningTrends"]

            recent_rating, older_rating = _average_rating(recent), _average_rating(older)
            if recent_rating > older_rating:
                trends.append("AI quality is improving over time")
            elif recent_rating < older_rating:
                trends.append("AI quality may be declining - more feedback needed")

            recent_fixes = sum(1 for d in recent if d.has_corrections)
            older_fixes = sum(1 for d in older if d.has_corrections)
            if recent_fixes < older_fixes:
                trends.append("Fewer corrections needed recently")
            elif recent_fixes > older_fixes:
                trends.append("More corrections needed recently")

            patterns = [" ".join(extract_keywords(d.user_prompt)[:3]) for d in designs]
            repeated = sum(1 for i, p in enumerate(patterns) if p in patterns[:i])
            if repeated:
                trends.append(f"{repeated} repeated request patterns found")

        return {"success": True, "analytics": analytics}
