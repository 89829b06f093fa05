import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent

# Load environment variables
load_dotenv(BASE_DIR / '.env')


def env_bool(name, default=False):
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


SECRET_KEY = os.getenv('SECRET_KEY', 'dev-insecure-bloodsync-key')
DEBUG = env_bool('DEBUG', False)
ALLOWED_HOSTS = [h.strip() for h in os.getenv('ALLOWED_HOSTS', '*').split(',') if h.strip()]

INSTALLED_APPS = [
    'django.contrib.contenttypes',
    'django.contrib.auth',
    'rest_framework',
    'api',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.middleware.common.CommonMiddleware',
]

ROOT_URLCONF = 'bloodsync.urls'
WSGI_APPLICATION = 'bloodsync.wsgi.application'

# Domain records live in MongoDB; the SQL database only backs Django's own apps.
DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': BASE_DIR / 'db.sqlite3',
    }
}

USE_TZ = True
TIME_ZONE = 'UTC'

REST_FRAMEWORK = {
    # Views authenticate through api.auth_utils.authenticate_request
    'DEFAULT_AUTHENTICATION_CLASSES': [],
    'DEFAULT_PERMISSION_CLASSES': [],
    'UNAUTHENTICATED_USER': None,
}

# MongoDB
MONGO_URI = os.getenv('MONGO_URI', 'mongodb://localhost:27017/')
MONGO_DB_NAME = os.getenv('MONGO_DB_NAME', 'bloodsync')
MONGO_SERVER_SELECTION_TIMEOUT_MS = int(os.getenv('MONGO_SERVER_SELECTION_TIMEOUT_MS', '5000'))
MONGO_OPERATION_TIMEOUT = float(os.getenv('MONGO_OPERATION_TIMEOUT', '10'))

# Proximity search
PROXIMITY_RADIUS_METERS = float(os.getenv('PROXIMITY_RADIUS_METERS', '100000'))
GEOHASH_PRECISION = int(os.getenv('GEOHASH_PRECISION', '10'))

# Notification fan-out
NOTIFY_MAX_ATTEMPTS = int(os.getenv('NOTIFY_MAX_ATTEMPTS', '3'))
NOTIFY_BACKOFF_SECONDS = float(os.getenv('NOTIFY_BACKOFF_SECONDS', '0.5'))
SMS_GATEWAY_URL = os.getenv('SMS_GATEWAY_URL', '')
SMS_GATEWAY_TOKEN = os.getenv('SMS_GATEWAY_TOKEN', '')
SMS_GATEWAY_TIMEOUT = float(os.getenv('SMS_GATEWAY_TIMEOUT', '5'))

# Email
EMAIL_BACKEND = os.getenv('EMAIL_BACKEND', 'django.core.mail.backends.smtp.EmailBackend')
EMAIL_HOST = os.getenv('EMAIL_HOST', 'localhost')
EMAIL_PORT = int(os.getenv('EMAIL_PORT', '587'))
EMAIL_HOST_USER = os.getenv('EMAIL_HOST_USER', '')
EMAIL_HOST_PASSWORD = os.getenv('EMAIL_HOST_PASSWORD', '')
EMAIL_USE_TLS = env_bool('EMAIL_USE_TLS', True)
EMAIL_TIMEOUT = int(os.getenv('EMAIL_TIMEOUT', '10'))
DEFAULT_FROM_EMAIL = os.getenv('DEFAULT_FROM_EMAIL', 'BloodSync <no-reply@bloodsync.local>')

LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO')

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'simple': {
            'format': '%(asctime)s %(levelname)s %(name)s: %(message)s',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'simple',
        },
    },
    'loggers': {
        'api': {
            'handlers': ['console'],
            'level': LOG_LEVEL,
        },
        'bloodsync': {
            'handlers': ['console'],
            'level': LOG_LEVEL,
        },
    },
}
