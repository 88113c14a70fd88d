# Gunicorn configuration for nsbackup
# The run guard lives in process memory, so one worker process serves every
# request and owns the scheduler; concurrency comes from threads.

import os
import logging

logger = logging.getLogger('gunicorn.error')

workers = 1
threads = int(os.environ.get('GUNICORN_THREADS', 4))

# A manual backup request blocks until the run finishes
timeout = int(os.environ.get('GUNICORN_TIMEOUT', 3900))


def post_worker_init(worker):
    """
    Called after a worker is initialized.

    The single worker always owns the backup scheduler, including workers
    respawned after a crash (worker.age > 0).

    Args:
        worker: Gunicorn worker instance
    """
    os.environ['SCHEDULER_WORKER'] = 'true'
    logger.info(f"Worker PID {worker.pid} (age={worker.age}): Designated as SCHEDULER OWNER")
