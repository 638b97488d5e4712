from django.apps import AppConfig


class NotificationsConfig(AppConfig):
    name = 'backend.apps.notifications'
    verbose_name = 'Notifications'
