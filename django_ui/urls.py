# /django_ui/urls.py
from django.urls import path

from django_ui import views

urlpatterns = [
    path("", views.index, name="index"),
    path("<str:provider>/<str:owner>/<str:repo>/", views.repo_view, name="repo"),
    path("<str:provider>/<str:owner>/<str:repo>/file/", views.file_view, name="file"),
]
