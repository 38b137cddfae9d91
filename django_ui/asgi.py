# /django_ui/asgi.py
# This module sets up the ASGI application for the ExplainGithub Django UI. It points Django at
# django_ui.settings and builds the ASGI app that main.py mounts under /ui.
import os

import django
from django.core.asgi import get_asgi_application


def get_django_asgi_app():
    os.environ.setdefault("DJANGO_SETTINGS_MODULE", "django_ui.settings")
    django.setup(set_prefix=False)
    return get_asgi_application()
