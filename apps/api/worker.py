"""RQ worker process entrypoint for order reconciliation jobs."""

from rq import Worker

from services.job_queue import RECONCILE_QUEUE_NAME, get_redis_connection


def main():
    redis_conn = get_redis_connection()
    worker = Worker([RECONCILE_QUEUE_NAME], connection=redis_conn)
    worker.work(with_scheduler=True)


if __name__ == "__main__":
    main()
