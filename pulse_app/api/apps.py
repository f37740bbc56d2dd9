from django.apps import AppConfig


class ApiConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "pulse_app.api"

    def ready(self):
        from pulse_app.surveys.services import build_engine

        # One engine per process; views reach it through get_engine()
        self.engine = build_engine()
