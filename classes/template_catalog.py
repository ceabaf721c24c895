# classes/template_catalog.py

import json
import os
from typing import Any, Dict, List

from classes.base_utils import ApiError, utcnow
from classes.settings import TEMPLATES_DIR, logger

MANIFEST_NAME = "manifest.json"
TEMPLATE_FILES = ("template.scad", "metadata.json", "README.md")


def list_templates(templates_dir: str = TEMPLATES_DIR) -> dict:
    path = os.path.join(templates_dir, MANIFEST_NAME)
    try:
        with open(path, "r", encoding="utf-8") as f:
            manifest = json.load(f)
    except (OSError, ValueError) as e:
        logger.error(f"Template manifest unavailable at {path}: {e}")
        raise ApiError(500, "Failed to load templates", "manifest_unavailable") from e

    templates = manifest.get("templates", []) if isinstance(manifest, dict) else []
    return {"success": True, "templates": templates, "count": len(templates)}


def read_template_file(template_id: str, filename: str, templates_dir: str = TEMPLATES_DIR) -> str:
    """
    Return the text of one file inside a template directory.
    Both parts must be plain names that stay inside templates_dir.
    """
    for part in (template_id, filename):
        if not part or part in (".", "..") or "/" in part or "\\" in part or "\x00" in part:
            raise ApiError(400, "Invalid template path", "invalid_path")

    root = os.path.realpath(templates_dir)
    path = os.path.realpath(os.path.join(root, template_id, filename))
    if os.path.commonpath([root, path]) != root:
        raise ApiError(400, "Invalid template path", "invalid_path")
    if not os.path.isfile(path):
        raise ApiError(404, "Template file not found", "not_found")

    with open(path, "r", encoding="utf-8") as f:
        return f.read()


def _template_entry(slug: str, metadata: Dict[str, Any], readme: str) -> Dict[str, Any]:
    first_line = readme.split("\n")[0].lstrip("# ").strip() if readme else ""
    return {
        "slug": slug,
        "name": metadata.get("name") or slug,
        "description": metadata.get("description") or first_line,
        "category": metadata.get("category") or "General",
        "tags": metadata.get("tags") or [],
        "difficulty": metadata.get("difficulty") or "Intermediate",
        "estimated_time": metadata.get("estimated_time") or "30-60 minutes",
        "files": {
            "metadata": f"/templates/{slug}/metadata.json",
            "readme": f"/templates/{slug}/README.md",
            "template": f"/templates/{slug}/template.scad",
        },
    }


def build_manifest(objects_dir: str) -> Dict[str, Any]:
    """
    Scan objects_dir for template directories holding metadata.json and README.md.
    Directories with unreadable metadata are skipped.
    """
    templates: List[Dict[str, Any]] = []
    for entry in sorted(os.listdir(objects_dir)):
        full_path = os.path.join(objects_dir, entry)
        if not os.path.isdir(full_path):
            continue
        try:
            with open(os.path.join(full_path, "metadata.json"), "r", encoding="utf-8") as f:
                metadata = json.load(f)
            with open(os.path.join(full_path, "README.md"), "r", encoding="utf-8") as f:
                readme = f.read()
            if not isinstance(metadata, dict):
                raise ValueError("metadata.json is not an object")
        except (OSError, ValueError) as e:
            logger.warning(f"Skipped {entry}: {e}")
            continue
        templates.append(_template_entry(entry, metadata, readme))
        logger.info(f"Added: {entry}")

    return {
        "version": 1,
        "generated_at": utcnow().isoformat(),
        "count": len(templates),
        "templates": templates,
    }


def write_manifest(manifest: Dict[str, Any], out_path: str) -> str:
    os.makedirs(os.path.dirname(out_path) or ".", exist_ok=True)
    with open(out_path, "w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2)
    logger.info(f"Manifest written to {out_path} ({manifest['count']} templates)")
    return out_path
