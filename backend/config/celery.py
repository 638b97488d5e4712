import os
from celery import Celery
from kombu import Queue

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'backend.config.settings')

app = Celery('study_space_payments')

# Configure Celery using Django settings
app.config_from_object('django.conf:settings', namespace='CELERY')

app.autodiscover_tasks()

app.conf.task_queues = (
    Queue('default'),      # Fallback queue for unmatched tasks
    Queue('payments'),
    Queue('emails'),
)

app.conf.task_default_queue = 'default'
app.conf.task_default_exchange = 'default'
app.conf.task_default_routing_key = 'default'

# Enforce JSON serialization
app.conf.task_serializer = 'json'
app.conf.result_serializer = 'json'
app.conf.accept_content = ['json']

# Order matters: more specific patterns must come before generic ones.
app.conf.task_routes = {
    'backend.apps.payments.tasks.send_*': {
        'queue': 'emails'
    },
    'backend.apps.accounts.tasks.send_*': {
        'queue': 'emails'
    },
    'backend.apps.payments.tasks.*': {
        'queue': 'payments'
    },
}

app.conf.task_time_limit = 300  # 5 minutes max
app.conf.task_soft_time_limit = 240
app.conf.result_expires = 3600

app.conf.worker_prefetch_multiplier = 1
app.conf.worker_max_tasks_per_child = 1000

# A lost worker must not drop a receipt or reward silently
app.conf.task_acks_late = True
app.conf.task_reject_on_worker_lost = True

app.conf.broker_transport_options = {
    'visibility_timeout': 3600,
    'socket_connect_timeout': 5,
    'retry_on_timeout': True,
}


@app.task(bind=True, name='health_check')
def health_check(self):
    """Health check for worker monitoring."""
    return {
        'status': 'healthy',
        'timestamp': self.request.timestamp,
        'worker': self.request.hostname,
        'queues': [q.name for q in app.conf.task_queues],
    }
