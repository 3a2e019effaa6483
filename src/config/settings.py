"""
Django settings for the newsletter delivery engine.

Values are read from the environment so the same module serves local
development and production deployments.
"""

import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY', 'dev-secret-key-change-me')
DEBUG = os.environ.get('DJANGO_DEBUG', 'false').lower() == 'true'
ALLOWED_HOSTS = [h for h in os.environ.get('DJANGO_ALLOWED_HOSTS', 'localhost,127.0.0.1').split(',') if h]

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'rest_framework',
    'django_filters',
    'newsletter',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

ROOT_URLCONF = 'config.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

WSGI_APPLICATION = None

if os.environ.get('DB_NAME'):
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.postgresql',
            'NAME': os.environ['DB_NAME'],
            'USER': os.environ.get('DB_USER', ''),
            'PASSWORD': os.environ.get('DB_PASSWORD', ''),
            'HOST': os.environ.get('DB_HOST', 'localhost'),
            'PORT': os.environ.get('DB_PORT', '5432'),
        }
    }
else:
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME': BASE_DIR / 'db.sqlite3',
        }
    }

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

LANGUAGE_CODE = 'fr-fr'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

STATIC_URL = 'static/'

CACHES = {
    'default': {
        'BACKEND': 'django.core.cache.backends.redis.RedisCache',
        'LOCATION': os.environ.get('REDIS_URL', 'redis://localhost:6379/1'),
    }
}

# Email
EMAIL_BACKEND = os.environ.get('EMAIL_BACKEND', 'django.core.mail.backends.smtp.EmailBackend')
EMAIL_HOST = os.environ.get('EMAIL_HOST', 'localhost')
EMAIL_PORT = int(os.environ.get('EMAIL_PORT', '587'))
EMAIL_HOST_USER = os.environ.get('EMAIL_HOST_USER', '')
EMAIL_HOST_PASSWORD = os.environ.get('EMAIL_HOST_PASSWORD', '')
EMAIL_USE_TLS = os.environ.get('EMAIL_USE_TLS', 'true').lower() == 'true'
DEFAULT_FROM_EMAIL = os.environ.get('DEFAULT_FROM_EMAIL', 'newsletter@localhost')

# REST framework
REST_FRAMEWORK = {
    'DEFAULT_AUTHENTICATION_CLASSES': [
        'rest_framework.authentication.SessionAuthentication',
        'rest_framework.authentication.BasicAuthentication',
    ],
    'DEFAULT_PERMISSION_CLASSES': [
        'rest_framework.permissions.IsAdminUser',
    ],
    'DEFAULT_FILTER_BACKENDS': [
        'django_filters.rest_framework.DjangoFilterBackend',
    ],
    'DEFAULT_PAGINATION_CLASS': 'rest_framework.pagination.PageNumberPagination',
    'PAGE_SIZE': 25,
}

# Celery
CELERY_BROKER_URL = os.environ.get('CELERY_BROKER_URL', 'redis://localhost:6379/0')
CELERY_RESULT_BACKEND = os.environ.get('CELERY_RESULT_BACKEND', CELERY_BROKER_URL)
CELERY_ACCEPT_CONTENT = ['json']
CELERY_TASK_SERIALIZER = 'json'
CELERY_RESULT_SERIALIZER = 'json'
CELERY_TIMEZONE = TIME_ZONE
# Drains hand over to a fresh task after NEWSLETTER_ENGINE DRAIN_MAX_SECONDS,
# which must stay below this limit.
CELERY_TASK_TIME_LIMIT = 6 * 60 * 60

# Newsletter engine configuration
NEWSLETTER_ENGINE = {
    # Dispatch pacing
    "BATCH_SIZE": int(os.environ.get('NEWSLETTER_BATCH_SIZE', '10')),
    "SEND_INTERVAL_MS": int(os.environ.get('NEWSLETTER_SEND_INTERVAL_MS', '1000')),
    "BATCH_DELAY_MS": int(os.environ.get('NEWSLETTER_BATCH_DELAY_MS', '5000')),
    "SEND_TIMEOUT_SECONDS": int(os.environ.get('NEWSLETTER_SEND_TIMEOUT', '30')),

    # Campaign outcome
    "FAILURE_RATIO_THRESHOLD": float(os.environ.get('NEWSLETTER_FAILURE_RATIO', '0.5')),

    # Worker housekeeping
    "STALE_JOB_TIMEOUT_SECONDS": 600,
    "DRAIN_MAX_SECONDS": 5 * 60 * 60,
    "QUEUE_LOCK_TIMEOUT_SECONDS": CELERY_TASK_TIME_LIMIT,
    "WORKER_POLL_SECONDS": 5,
    "COMPLETED_JOB_RETENTION_DAYS": 7,

    # Dashboard
    "RECENT_ACTIVITY_LIMIT": 50,

    # Tracking
    "TRACKING_BASE_URL": os.environ.get('NEWSLETTER_TRACKING_BASE_URL', 'http://localhost:8000'),
    "TRACKING_REQUIRE_SIGNATURE": os.environ.get('NEWSLETTER_REQUIRE_SIGNATURE', 'false').lower() == 'true',
    "ALLOWED_REDIRECT_DOMAINS": [
        d for d in os.environ.get('NEWSLETTER_ALLOWED_REDIRECT_DOMAINS', '').split(',') if d
    ],
    "FALLBACK_REDIRECT_URL": os.environ.get('NEWSLETTER_FALLBACK_REDIRECT_URL', '/'),

    # Sender identity
    "FROM_EMAIL": DEFAULT_FROM_EMAIL,
    "FROM_NAME": os.environ.get('NEWSLETTER_FROM_NAME', ''),
}

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{levelname} {asctime} {name} {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': 'WARNING',
    },
    'loggers': {
        'newsletter': {
            'handlers': ['console'],
            'level': os.environ.get('NEWSLETTER_LOG_LEVEL', 'INFO'),
            'propagate': False,
        },
    },
}
