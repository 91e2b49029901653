from celery.utils.log import get_task_logger

# Shared logger for every Celery task module
task_logger = get_task_logger(__name__)
