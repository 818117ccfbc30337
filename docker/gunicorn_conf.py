# Gunicorn configuration for Tierback
# Run with: gunicorn -c docker/gunicorn_conf.py "tierback:create_app()"
# Exactly one worker owns the backup scheduler

import os
import logging

logger = logging.getLogger('gunicorn.error')

bind = os.environ.get('GUNICORN_BIND', '0.0.0.0:8000')
workers = int(os.environ.get('GUNICORN_WORKERS', '2'))


def post_fork(server, worker):
    """
    Called in each worker right after it is forked, before the app loads.

    The first worker (worker.age == 1 for the first spawn of this arbiter)
    becomes the scheduler owner so backup runs are never scheduled twice.

    Args:
        server: Gunicorn arbiter
        worker: Gunicorn worker instance
    """
    if worker.age == 1:
        os.environ['SCHEDULER_WORKER'] = 'true'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): Designated as SCHEDULER OWNER")
    else:
        os.environ['SCHEDULER_WORKER'] = 'false'
        logger.info(f"Worker PID {worker.pid} (age={worker.age}): Standard HTTP worker (scheduler disabled)")
