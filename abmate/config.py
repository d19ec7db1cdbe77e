import os
import logging
import json
import boto3
from botocore.exceptions import BotoCoreError, ClientError
from dotenv import load_dotenv

# Load .env file immediately (Local Fallback)
load_dotenv()

logger = logging.getLogger("abmate.config")

TOKEN_URL = "https://account.apple.com/auth/oauth2/token"
ASSERTION_AUDIENCE = "https://account.apple.com/auth/oauth2/v2/token"
API_BASE_URL = "https://api-business.apple.com/v1"
SCOPE = "business.api"


def _as_float(value, default=None):
    if value is None or str(value).strip() == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        logger.warning(f"⚠️  Ignoring non-numeric timeout value: {value!r}")
        return default


def fetch_aws_secrets():
    """
    Fetches secrets from AWS Secrets Manager.
    Returns a dict of secrets or empty dict if failed/not configured.
    Typical use is keeping ABMATE_PRIVATE_KEY (the PEM) off disk.
    """
    if not os.getenv("ABMATE_USE_AWS_SECRETS"):
        return {}

    secret_name = os.getenv("ABMATE_AWS_SECRET_ID", "prod/abmate/config")
    region_name = os.getenv("ABMATE_AWS_REGION", "us-east-1")

    logger.info(f"🔐 Attempting to fetch secrets from AWS ({secret_name})...")

    try:
        session = boto3.session.Session()
        client = session.client(service_name="secretsmanager", region_name=region_name)
        response = client.get_secret_value(SecretId=secret_name)

        if "SecretString" in response:
            return json.loads(response["SecretString"])
    except (ClientError, BotoCoreError) as e:
        logger.warning(f"⚠️  Could not fetch AWS Secrets: {e}")
    except ValueError as e:
        logger.warning(f"⚠️  AWS secret is not valid JSON: {e}")

    return {}


def build_config(env_config):
    return {
        # Service account
        "ABM_CLIENT_ID": env_config.get("ABMATE_CLIENT_ID"),
        "ABM_KEY_ID": env_config.get("ABMATE_KEY_ID"),
        "ABM_PRIVATE_KEY_PATH": env_config.get("ABMATE_PRIVATE_KEY_PATH"),
        "ABM_PRIVATE_KEY": env_config.get("ABMATE_PRIVATE_KEY"),

        # Endpoints
        "ABM_TOKEN_URL": env_config.get("ABMATE_TOKEN_URL", TOKEN_URL),
        "ABM_API_BASE_URL": env_config.get("ABMATE_API_BASE_URL", API_BASE_URL),
        # None keeps the requests default (no timeout)
        "ABM_HTTP_TIMEOUT": _as_float(env_config.get("ABMATE_HTTP_TIMEOUT")),

        # Local state
        "CREDENTIALS_FILE": env_config.get(
            "ABMATE_CREDENTIALS_FILE", os.path.join("abmate_state", "credentials.json")
        ),
        "LOG_DIR": env_config.get("ABMATE_LOG_DIR", "logs"),
    }


# 1. Load Local Env
env_config = dict(os.environ)

# 2. Overlay AWS Secrets (if enabled)
env_config.update(fetch_aws_secrets())

# 3. Build Global CONFIG
CONFIG = build_config(env_config)


def load_config():
    """
    Validation helper to ensure critical keys exist.
    """
    critical_keys = ["ABM_CLIENT_ID", "ABM_KEY_ID"]
    missing = [k for k in critical_keys if not CONFIG.get(k)]
    if not CONFIG.get("ABM_PRIVATE_KEY_PATH") and not CONFIG.get("ABM_PRIVATE_KEY"):
        missing.append("ABM_PRIVATE_KEY_PATH|ABM_PRIVATE_KEY")

    if missing:
        logger.warning(f"⚠️  Missing config keys. Check ABMATE_* values in .env: {', '.join(missing)}")

    return CONFIG
