# classes/knowledge_loader.py

import json
import os
from typing import Any, Dict

from sqlalchemy import select

from classes.entities import TrainingExample
from classes.settings import KNOWLEDGE_DIR, logger

KNOWLEDGE_FILES = ("ai_training_data.json", "enhanced_manifest.json", "examples.json")


def load_reference_files(knowledge_dir: str = KNOWLEDGE_DIR) -> Dict[str, Dict[str, Any]]:
    """
    Merge the reference JSON files into one {key: entry} mapping.
    Missing or unreadable files contribute nothing.
    """
    merged: Dict[str, Dict[str, Any]] = {}
    for filename in KNOWLEDGE_FILES:
        path = os.path.join(knowledge_dir, filename)
        if not os.path.exists(path):
            continue
        try:
            with open(path, "r", encoding="utf-8-sig") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Knowledge file {path} skipped: {e}")
            continue

        if isinstance(data, list):
            data = {str(i): entry for i, entry in enumerate(data)}
        if not isinstance(data, dict):
            continue

        prefix = os.path.splitext(filename)[0]
        for key, entry in data.items():
            if isinstance(entry, dict):
                merged[f"{prefix}:{key}"] = entry
    return merged


def load_approved_examples(session_factory) -> Dict[str, Dict[str, Any]]:
    session = session_factory()
    try:
        rows = session.scalars(
            select(TrainingExample).where(
                TrainingExample.active.is_(True),
                TrainingExample.quality_label == "good",
            )
        ).all()
    finally:
        session.close()

    return {
        f"curated:{row.id}": {
            "prompt": row.input_prompt or "",
            "description": row.description or row.template or "",
            "keywords": [t for t in (row.tags or []) if ":" not in t],
            "code": row.generated_code or "",
        }
        for row in rows
    }


def load_knowledge(session_factory, knowledge_dir: str = KNOWLEDGE_DIR) -> Dict[str, Dict[str, Any]]:
    knowledge = load_reference_files(knowledge_dir)
    knowledge.update(load_approved_examples(session_factory))
    logger.info(f"Loaded knowledge base: {len(knowledge)} entries")
    return knowledge
