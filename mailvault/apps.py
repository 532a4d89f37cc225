from django.apps import AppConfig


class MailvaultConfig(AppConfig):
    name = 'mailvault'
    default_auto_field = 'django.db.models.BigAutoField'

    def ready(self):
        # Sync models live outside models.py
        from mailvault.sync import models  # noqa: F401
