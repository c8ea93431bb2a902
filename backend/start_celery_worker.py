#!/usr/bin/env python3
"""Start the import Celery worker with suppressed security warnings for containerized environments."""

import warnings
import sys
from celery.bin import worker

# Suppress the superuser privilege warning
warnings.filterwarnings('ignore', category=UserWarning, message='.*superuser privileges.*')
warnings.filterwarnings('ignore', category=RuntimeWarning, message='.*superuser privileges.*')

from app.db.session import init_db
from app.workers.celery_app import celery_app

if __name__ == '__main__':
    # Workers may start before the API has created the tables
    init_db()

    worker_app = worker.worker(app=celery_app)

    sys.argv = [
        'celery',
        '-A', 'app.workers.celery_app.celery_app',
        'worker',
        '--loglevel=info',
        '--queues=imports',
        '--pool=solo',
        '--without-mingle',
        '--without-gossip',
    ] + sys.argv[1:]

    worker_app.run()
