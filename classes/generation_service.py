# classes/generation_service.py

import random
import string
import time
from decimal import Decimal
from typing import Any, Callable, Dict, List

import openai
from langchain_core.messages import HumanMessage, SystemMessage
from sqlalchemy import select

from classes.app_config import COMPLEXITY_INDICATORS, DESIGN_CATEGORIES, STOP_WORDS
from classes.auth import AuthUser
from classes.base_utils import ApiError, BaseUtils
from classes.entities import AiLearningSession
from classes.generation_prompts import (
    BASE_SYSTEM_PROMPT,
    CLOSING_INSTRUCTION,
    HISTORY_HEADER,
    HISTORY_MANDATE,
    PATTERN_BLOCK,
    SIMILAR_REQUEST_BLOCK,
)
from classes.knowledge_loader import load_knowledge
from classes.llm_client import MaxRetryErrorsException, is_rate_limit_error
from classes.settings import logger

DEFAULT_DESIGN_NAME = "AI Generated Design"
_PUNCTUATION = string.punctuation + "“”‘’"


# -----------------------
# Prompt analysis
# -----------------------

def extract_keywords(text: str | None) -> List[str]:
    words = []
    for raw in (text or "").lower().split():
        word = raw.strip(_PUNCTUATION)
        if len(word) > 3 and word not in STOP_WORDS:
            words.append(word)
    return words


def analyze_prompt(prompt: str) -> tuple[str, str]:
    prompt_lower = (prompt or "").lower()

    category = "general"
    for cat, keywords in DESIGN_CATEGORIES.items():
        if any(k in prompt_lower for k in keywords):
            category = cat
            break

    complexity = "intermediate"
    for level, keywords in COMPLEXITY_INDICATORS.items():
        if any(k in prompt_lower for k in keywords):
            complexity = level
            break

    return category, complexity


def find_similar_patterns(prompt: str, knowledge: Dict[str, Dict[str, Any]], top_n: int = 5) -> List[Dict[str, Any]]:
    keywords = extract_keywords(prompt)
    if not keywords:
        return []

    matches = []
    for key, data in knowledge.items():
        if not (data.get("description") or data.get("prompt") or data.get("keywords")):
            continue
        search_text = " ".join(
            [str(data.get("description") or ""), str(data.get("prompt") or "")]
            + [str(k) for k in (data.get("keywords") or [])]
        ).lower()
        match_count = sum(1 for k in keywords if k in search_text)
        if match_count > 0:
            matches.append({
                "key": key,
                "data": data,
                "relevanceScore": match_count / len(keywords),
                "matchCount": match_count,
            })

    matches.sort(key=lambda m: m["relevanceScore"], reverse=True)
    return matches[:top_n]


def find_similar_user_prompts(prompt: str, history: List[AiLearningSession]) -> List[AiLearningSession]:
    # stop words are dropped on both sides; a prompt without keywords matches no sessions
    current = extract_keywords(prompt)
    if not current:
        return []
    threshold = min(2, len(current) * 0.3)

    similar = []
    for session in history:
        theirs = extract_keywords(session.user_prompt)
        overlap = sum(
            1 for k in current
            if any(s in k or k in s for s in theirs)
        )
        if overlap > 0 and overlap >= threshold:
            similar.append(session)

    similar.sort(key=lambda s: 0 if s.has_corrections else 1)
    return similar


def _clip(text: str | None, limit: int) -> str:
    text = text or ""
    return text[:limit] + ("..." if len(text) > limit else "")


def build_system_prompt(
    similar_patterns: List[Dict[str, Any]],
    user_history: List[AiLearningSession],
    similar_user_prompts: List[AiLearningSession] | None = None,
) -> str:
    similar_user_prompts = similar_user_prompts or []
    parts = [BASE_SYSTEM_PROMPT]

    if similar_patterns:
        parts.append("\n\nRELEVANT PATTERNS FROM KNOWLEDGE BASE:\n")
        for index, pattern in enumerate(similar_patterns, start=1):
            data = pattern["data"]
            parts.append(PATTERN_BLOCK.format(INDEX=index, RELEVANCE=round(pattern["relevanceScore"] * 100)))
            if data.get("description"):
                parts.append(f"Description: {data['description']}\n")
            if data.get("code"):
                parts.append(f"Example Code:\n{_clip(data['code'], 500)}\n")
            if data.get("techniques"):
                parts.append(f"Techniques: {', '.join(map(str, data['techniques']))}\n")

    if user_history:
        parts.append(HISTORY_HEADER.format(COUNT=len(user_history)) + "\n")

        if similar_user_prompts:
            parts.append("\nSIMILAR REQUESTS (HIGHEST PRIORITY FOR LEARNING):\n")
            for index, session in enumerate(similar_user_prompts[:2], start=1):
                parts.append(SIMILAR_REQUEST_BLOCK.format(INDEX=index, PROMPT=session.user_prompt))
                if session.has_corrections:
                    parts.append(f"USER CORRECTED THE CODE TO:\n{_clip(session.final_code, 600)}\n")
                    parts.append("Use this corrected approach for similar requests.\n")
                else:
                    parts.append(f"Generated Code: {_clip(session.generated_code, 400)}\n")
                if session.user_feedback is not None:
                    verdict = "(POOR - avoid this approach)" if session.user_feedback <= 3 else "(GOOD - replicate this style)"
                    parts.append(f"Rating: {session.user_feedback}/5 {verdict}\n")

        similar_ids = {s.id for s in similar_user_prompts}
        remaining = [h for h in user_history if h.id not in similar_ids][:3]
        if remaining:
            parts.append("\nADDITIONAL USER PREFERENCES:\n")
            for index, session in enumerate(remaining, start=1):
                parts.append(f"\n--- Example {index} ---\nRequest: {session.user_prompt}\n")
                if session.has_corrections:
                    parts.append(f"USER'S CORRECTED VERSION:\n{_clip(session.final_code, 500)}\n")
                else:
                    parts.append(f"Generated: {_clip(session.generated_code, 300)}\n")
                if session.user_feedback is not None:
                    parts.append(f"Rating: {session.user_feedback}/5\n")

        parts.append(HISTORY_MANDATE)

    parts.append(CLOSING_INSTRUCTION)
    return "".join(parts)


def new_session_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"session_{int(time.time() * 1000)}_{suffix}"


class GenerationService(BaseUtils):
    def __init__(self, session_factory, llm_factory: Callable[[], Any], knowledge_loader=load_knowledge):
        self.SessionFactory = session_factory
        self.llm_factory = llm_factory
        self.knowledge_loader = knowledge_loader

    def get_user_learning_history(self, user_id: str, limit: int = 10) -> List[AiLearningSession]:
        session = self._session()
        try:
            rows = session.scalars(
                select(AiLearningSession)
                .where(
                    AiLearningSession.user_id == str(user_id),
                    AiLearningSession.user_feedback.is_not(None),
                )
                .order_by(AiLearningSession.updated_at.desc())
                .limit(limit * 2)
            ).all()
        finally:
            session.close()

        ranked = sorted(rows, key=lambda s: (0 if s.has_corrections else 1, -(s.user_feedback or 0)))
        return ranked[:limit]

    def _invoke_llm(self, llm, system_prompt: str, prompt: str) -> str:
        try:
            return llm.invoke([SystemMessage(content=system_prompt), HumanMessage(content=prompt)])
        except (MaxRetryErrorsException, openai.OpenAIError) as e:
            cause = e.__cause__ if isinstance(e, MaxRetryErrorsException) else e
            if is_rate_limit_error(cause):
                if getattr(cause, "code", None) == "insufficient_quota":
                    raise ApiError(429, "API quota exceeded. Please try again later.", "quota_exceeded") from e
                raise ApiError(429, "Rate limit exceeded. Please try again in a few moments.", "rate_limited") from e
            logger.exception("generate_design: model call failed")
            raise ApiError(500, "Failed to generate design. Please try again.", "generation_failed") from e

    def _store_learning_session(self, user_id: str, record: dict) -> None:
        session = self._session()
        try:
            session.add(AiLearningSession(user_id=user_id, **record))
            session.commit()
        except Exception as e:
            session.rollback()
            # the generated code is still returned to the user
            logger.error(f"Failed to store learning session {record.get('session_id')}: {e}")
        finally:
            session.close()

    def generate_design(self, user: AuthUser, prompt, name=None) -> dict:
        start = time.time()
        if not isinstance(prompt, str) or not prompt.strip():
            raise ApiError(400, "Prompt is required", "validation_error")
        prompt = prompt.strip()

        category, complexity = analyze_prompt(prompt)
        knowledge = self.knowledge_loader(self.SessionFactory)
        similar_patterns = find_similar_patterns(prompt, knowledge)
        user_history = self.get_user_learning_history(user.id)
        similar_user_prompts = find_similar_user_prompts(prompt, user_history)
        system_prompt = build_system_prompt(similar_patterns, user_history, similar_user_prompts)

        self.color_print(
            f"Generating {complexity} {category} design with {len(similar_patterns)} similar patterns "
            f"and {len(user_history)} user examples",
            color="cyan",
        )

        llm = self.llm_factory()
        raw = self._invoke_llm(llm, system_prompt, prompt)
        code = self.clean_triple_backticks(raw).strip()
        if not code:
            raise ApiError(502, "Failed to generate OpenSCAD code", "empty_generation")

        generation_time = int((time.time() - start) * 1000)
        tokens_used = int(llm.get_total_tokens())
        session_id = new_session_id()

        self._store_learning_session(user.id, {
            "session_id": session_id,
            "user_prompt": prompt,
            "system_prompt": system_prompt,
            "generated_code": code,
            "design_category": category,
            "complexity_level": complexity,
            "model_name": getattr(llm, "model_name", None),
            "generation_time_ms": generation_time,
            "tokens_used": tokens_used,
            "cost_usd": Decimal(str(round(llm.get_accrued_cost(), 6))),
        })

        return {
            "code": code,
            "prompt": prompt,
            "name": name.strip() if isinstance(name, str) and name.strip() else DEFAULT_DESIGN_NAME,
            "success": True,
            "metadata": {
                "category": category,
                "complexity": complexity,
                "similarPatterns": len(similar_patterns),
                "userExamples": len(user_history),
                "similarPrompts": len(similar_user_prompts),
                "hasCorrections": any(h.has_corrections for h in user_history),
                "generationTime": generation_time,
                "tokensUsed": tokens_used,
                "sessionId": session_id,
            },
        }
