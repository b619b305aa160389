"""Move guest records into an account.

Every record is upserted on its own id, so replaying the same mirror twice
leaves the account unchanged the second time. Savings pools go first, then
transactions.
"""

import logging

from .records import Failure, run_isolated, summarize


logger = logging.getLogger(__name__)


def _record_id(record):
    return record.get("id") if isinstance(record, dict) else None


def _upsert_all(records, upsert, service):
    items = [(_record_id(record), record) for record in records]
    return run_isolated(items, lambda record: upsert(dict(record)), on_failure=service.rollback)


def _failed_ids(outcomes):
    return {outcome.position for outcome in outcomes if isinstance(outcome, Failure)}


def sync_records(service, savings=(), transactions=()):
    savings_outcomes = _upsert_all(list(savings or []), service.upsert_savings, service)
    transaction_outcomes = _upsert_all(list(transactions or []), service.upsert_transaction, service)
    report = {
        "tabungan": summarize(savings_outcomes),
        "transaksi": summarize(transaction_outcomes),
    }
    report["complete"] = not (report["tabungan"]["failed"] or report["transaksi"]["failed"])
    return report


def replay_local_store(local_store, service):
    """Upsert a guest's mirrored records through ``service``.

    Synced entries leave the mirror and failed ones stay behind for the next
    attempt. The guest identity is dropped only once nothing is left.
    """
    guest = local_store.guest_identity(create=False)
    if guest is None:
        return sync_records(service)

    savings = local_store.load_savings(guest.id)
    transactions = local_store.load_transactions(guest.id)

    savings_outcomes = _upsert_all(savings, service.upsert_savings, service)
    failed = _failed_ids(savings_outcomes)
    local_store.save_savings(guest.id, [record for record in savings if _record_id(record) in failed])

    transaction_outcomes = _upsert_all(transactions, service.upsert_transaction, service)
    failed = _failed_ids(transaction_outcomes)
    local_store.save_transactions(guest.id, [record for record in transactions if _record_id(record) in failed])

    report = {
        "tabungan": summarize(savings_outcomes),
        "transaksi": summarize(transaction_outcomes),
    }
    report["complete"] = not (report["tabungan"]["failed"] or report["transaksi"]["failed"])
    if report["complete"]:
        local_store.clear_records(guest.id)
        local_store.reset_identity()
    else:
        logger.info(
            "Guest %s sync incomplete: %s savings and %s transactions kept locally",
            guest.id,
            report["tabungan"]["failed"],
            report["transaksi"]["failed"],
        )
    return report
