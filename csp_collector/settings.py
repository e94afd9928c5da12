import os

from .log import logging_config


def env_bool(name, default=False):
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "csp-collector-insecure-key")
DEBUG = env_bool("DJANGO_DEBUG")
ALLOWED_HOSTS = os.environ.get("DJANGO_ALLOWED_HOSTS", "*").split(",")

INSTALLED_APPS = ["csp_collector"]
MIDDLEWARE = []
ROOT_URLCONF = "csp_collector.urls"
WSGI_APPLICATION = "csp_collector.wsgi.application"
DATABASES = {}
USE_TZ = True

# Collector
PORT = int(os.environ.get("PORT") or 8080)
METRICS_PORT = int(os.environ["METRICS_PORT"]) if os.environ.get("METRICS_PORT") else None
ENABLE_METRICS = env_bool("ENABLE_METRICS")
CSP_LABEL_POLICY = os.environ.get("CSP_LABEL_POLICY", "minimal")
CSP_REPORT_MAX_SIZE = int(os.environ.get("CSP_REPORT_MAX_SIZE") or 8 * 1024)

LOGGING = logging_config(os.environ.get("LOG_LEVEL", "INFO"))
