from settlement.tasks.celery_app import celery
from settlement.tasks import worker_jobs


@celery.task(name="settlement.tasks.jobs.process_transfers")
def process_transfers():
    return worker_jobs.process_transfers()


@celery.task(name="settlement.tasks.jobs.process_weekly_payouts")
def process_weekly_payouts():
    return worker_jobs.process_weekly_payouts()


@celery.task(name="settlement.tasks.jobs.reconcile_payouts")
def reconcile_payouts():
    return worker_jobs.reconcile_payouts()


@celery.task(name="settlement.tasks.jobs.process_email_queue")
def process_email_queue(limit: int = 50):
    return worker_jobs.process_email_queue(limit=limit)
