import logging
import os

from dotenv import load_dotenv

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
)

logger = logging.getLogger("flexicad_backend")

# --- Configuration ---
APP_NAME = "FlexiCAD Designer"
APP_VERSION = "1.0.0"
APP_ENV = (os.getenv("APP_ENV") or "production").lower()
IS_DEV = APP_ENV == "development"
SITE_URL = os.getenv("SITE_URL", "http://localhost:8888").rstrip("/")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

DATABASE_URL        = os.getenv("DATABASE_URL", "")
DB_HOST             = os.environ.get("DB_HOST", "localhost")
DB_PORT             = int(os.environ.get("DB_PORT", "5432"))
DB_NAME             = os.environ.get("DB_NAME", "postgres")
DB_USER             = os.environ.get("DB_USER", "postgres")
DB_PASSWORD         = os.environ.get("DB_PASSWORD")

SUPABASE_URL                     = os.getenv("SUPABASE_URL", "")
SUPABASE_ANON_KEY                = os.getenv("SUPABASE_ANON_KEY", "")
SUPABASE_SERVICE_ROLE_KEY        = os.getenv("SUPABASE_SERVICE_ROLE_KEY", "")
SUPABASE_STORAGE_BUCKET_TRAINING = os.getenv("SUPABASE_STORAGE_BUCKET_TRAINING", "training-assets")
CURATED_PREFIX                   = os.getenv("CURATED_PREFIX", "curated/templates")
CURATED_GLOBAL_PATH              = os.getenv("CURATED_GLOBAL_PATH", "curated/global/approved.jsonl")

STRIPE_SECRET_KEY       = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_PUBLISHABLE_KEY  = os.getenv("STRIPE_PUBLISHABLE_KEY", "")
STRIPE_WEBHOOK_SECRET   = os.getenv("STRIPE_WEBHOOK_SECRET", "")

GENERATION_MODEL = os.getenv("GENERATION_MODEL")
LLM_TIMEOUT = float(os.getenv("LLM_TIMEOUT", "120"))

DEV_BEARER_TOKEN = os.getenv("DEV_BEARER_TOKEN", "")
ADMIN_EMAILS = os.getenv("ADMIN_EMAILS", "")

BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
FLEXICAD_CONFIG_PATH = os.getenv("FLEXICAD_CONFIG_PATH", os.path.join(BASE_DIR, "config", "flexicad.jsonc"))
KNOWLEDGE_DIR = os.getenv("KNOWLEDGE_DIR", os.path.join(BASE_DIR, "ai-reference"))
TEMPLATES_DIR = os.getenv("TEMPLATES_DIR", os.path.join(BASE_DIR, "public", "templates"))


def build_database_url() -> str:
    if DATABASE_URL:
        return DATABASE_URL
    if not DB_PASSWORD:
        raise RuntimeError("No DATABASE_URL and no DB_PASSWORD configured")
    return f"postgresql+pg8000://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}"
