"""RQ worker process entrypoint for publish, metrics, maintenance and notification jobs."""

import logging

from rq import Worker

from services.job_queue import ALL_QUEUE_NAMES, get_redis_connection


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    redis_conn = get_redis_connection()
    worker = Worker(list(ALL_QUEUE_NAMES), connection=redis_conn)
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    main()
