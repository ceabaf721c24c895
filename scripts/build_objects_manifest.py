import os
import sys

from classes.settings import BASE_DIR, TEMPLATES_DIR, logger
from classes.template_catalog import MANIFEST_NAME, build_manifest, write_manifest

OBJECTS_DIR = os.getenv("OBJECTS_DIR", os.path.join(BASE_DIR, "objects"))


def main() -> int:
    logger.info("Building objects manifest...")
    try:
        manifest = build_manifest(OBJECTS_DIR)
        write_manifest(manifest, os.path.join(TEMPLATES_DIR, MANIFEST_NAME))
    except OSError as e:
        logger.error(f"Failed: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
