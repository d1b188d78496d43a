"""Scheduled retention jobs.

Each job is re-entrant and independent of the others; the beat schedule
runs them hourly.
"""

from celery import shared_task

from modules.retention import automaton


@shared_task(name="retention.notify_abandoned_checkouts")
def notify_abandoned_checkouts() -> dict:
    return automaton.notify_abandoned_checkouts()


@shared_task(name="retention.delete_abandoned_checkouts")
def delete_abandoned_checkouts() -> dict:
    return automaton.delete_abandoned_checkouts()


@shared_task(name="retention.notify_deferred_expiry")
def notify_deferred_expiry() -> dict:
    return automaton.notify_deferred_expiry()


@shared_task(name="retention.execute_deferred_deletions")
def execute_deferred_deletions() -> dict:
    return automaton.execute_deferred_deletions()
