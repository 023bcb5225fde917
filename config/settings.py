"""
Django settings for VaultChat backend.
"""
import os
import re
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Build paths inside the project like this: BASE_DIR / 'subdir'.
BASE_DIR = Path(__file__).resolve().parent.parent


def env_flag(name: str, default: str = 'False') -> bool:
    return os.getenv(name, default).lower() in ('true', '1', 'yes')


# SECURITY WARNING: keep the secret key used in production secret!
SECRET_KEY = os.getenv('SECRET_KEY', 'django-insecure-dev-key-change-in-production')

# SECURITY WARNING: don't run with debug turned on in production!
DEBUG = env_flag('DEBUG')

ALLOWED_HOSTS = [
    h.strip() for h in os.getenv('ALLOWED_HOSTS', 'localhost,127.0.0.1').split(',')
]

# Application definition
INSTALLED_APPS = [
    'daphne',  # ASGI server
    'django.contrib.contenttypes',
    'django.contrib.auth',
    'apps.authn',
    'apps.llmconfig',
    'apps.chat',
    'apps.actions',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.middleware.common.CommonMiddleware',
]

ROOT_URLCONF = 'config.urls'

TEMPLATES = []

ASGI_APPLICATION = 'config.asgi.application'

# Database
DATABASE_URL = os.getenv('DATABASE_URL', '')
_db_match = re.match(
    r'postgres(?:ql)?://(?P<user>[^:]+):(?P<password>[^@]+)@(?P<host>[^:]+):(?P<port>\d+)/(?P<name>.+)',
    DATABASE_URL
)
if _db_match:
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.postgresql',
            'NAME': _db_match.group('name'),
            'USER': _db_match.group('user'),
            'PASSWORD': _db_match.group('password'),
            'HOST': _db_match.group('host'),
            'PORT': _db_match.group('port'),
        }
    }
else:
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME': BASE_DIR / 'db.sqlite3',
        }
    }

# Password validation (minimal for API-only backend)
AUTH_PASSWORD_VALIDATORS = []

# Internationalization
LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

# Default primary key field type
DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# =============================================================================
# Keycloak / JWT Configuration
# =============================================================================
KC_BASE_URL = os.getenv('KC_BASE_URL', 'http://keycloak:8080')
KC_REALM = os.getenv('KC_REALM', 'vaultchat')
KC_AUDIENCE = os.getenv('KC_AUDIENCE', 'vaultchat-frontend')
KC_ISSUER = os.getenv('KC_ISSUER', f'{KC_BASE_URL}/realms/{KC_REALM}')
KC_JWKS_URL = f'{KC_BASE_URL}/realms/{KC_REALM}/protocol/openid-connect/certs'

# Tokens issued through the browser-facing proxy carry this issuer
KC_EXTERNAL_ISSUER = os.getenv('KC_EXTERNAL_ISSUER', 'http://localhost/realms/vaultchat')
KC_VALID_ISSUERS = [KC_ISSUER, KC_EXTERNAL_ISSUER]

# JWKS cache TTL in seconds (10 minutes default)
KC_JWKS_CACHE_TTL = int(os.getenv('KC_JWKS_CACHE_TTL', '600'))

# Reject tokens whose aud/azp does not name KC_AUDIENCE (warn only when off)
KC_ENFORCE_AUDIENCE = env_flag('KC_ENFORCE_AUDIENCE')

# =============================================================================
# Tenancy
# =============================================================================
# Token claim holding the tenant id; tokens without it act for DEFAULT_TENANT_ID
TENANT_CLAIM = os.getenv('TENANT_CLAIM', 'tenant_id')
DEFAULT_TENANT_ID = os.getenv('DEFAULT_TENANT_ID', 'default')

# =============================================================================
# Redis (rate limiting)
# =============================================================================
REDIS_URL = os.getenv('REDIS_URL', 'redis://redis:6379/0')
DISABLE_RATE_LIMITING = env_flag('DISABLE_RATE_LIMITING')

# =============================================================================
# Credential Vault
# =============================================================================
# Comma-separated Fernet keys; the first encrypts, all decrypt (rotation).
# Generate with: Fernet.generate_key()
LLM_KEY_ENCRYPTION_KEY = os.getenv('LLM_KEY_ENCRYPTION_KEY', '')

# Timeout for provider connectivity tests (seconds)
LLM_TEST_TIMEOUT = int(os.getenv('LLM_TEST_TIMEOUT', '30'))

# =============================================================================
# RAG Backend
# =============================================================================
RAG_BACKEND_URL = os.getenv('RAG_BACKEND_URL', 'http://rag-backend:8080')
RAG_BACKEND_INTERNAL_SECRET = os.getenv('RAG_BACKEND_INTERNAL_SECRET', '')
# Read timeout for forwarded chat requests; streams can run long
RAG_BACKEND_TIMEOUT = int(os.getenv('RAG_BACKEND_TIMEOUT', '120'))

# =============================================================================
# Side-effect actions
# =============================================================================
EMAIL_BACKEND = os.getenv('EMAIL_BACKEND', 'django.core.mail.backends.smtp.EmailBackend')
EMAIL_HOST = os.getenv('EMAIL_HOST', 'localhost')
EMAIL_PORT = int(os.getenv('EMAIL_PORT', '25'))
EMAIL_HOST_USER = os.getenv('EMAIL_HOST_USER', '')
EMAIL_HOST_PASSWORD = os.getenv('EMAIL_HOST_PASSWORD', '')
EMAIL_USE_TLS = env_flag('EMAIL_USE_TLS')
DEFAULT_FROM_EMAIL = os.getenv('DEFAULT_FROM_EMAIL', 'assistant@vaultchat.local')

VONAGE_API_KEY = os.getenv('VONAGE_API_KEY', '')
VONAGE_API_SECRET = os.getenv('VONAGE_API_SECRET', '')
VONAGE_FROM_NUMBER = os.getenv('VONAGE_FROM_NUMBER', '')

# =============================================================================
# Logging
# =============================================================================
LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{levelname} {asctime} {module} {message}',
            'style': '{',
        },
        'json': {
            'format': '%(message)s',  # Audit logs are already JSON
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
        'audit': {
            'class': 'logging.StreamHandler',
            'formatter': 'json',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': 'INFO',
    },
    'loggers': {
        'apps': {
            'handlers': ['console'],
            'level': os.getenv('APP_LOG_LEVEL', 'INFO'),
            'propagate': False,
        },
        'audit': {
            'handlers': ['audit'],
            'level': 'INFO',
            'propagate': False,
        },
    },
}
