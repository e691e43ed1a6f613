# wms_replenishment/batch/replen_job.py
import logging
from typing import Dict, Optional

from wms_replenishment.db import session_scope
from wms_replenishment.exceptions import BatchProcessError
from wms_replenishment.logging_setup import get_logger, log_exception, logger as log_manager
from wms_replenishment.services.replenishment_service import ReplenishmentService

# Initialize logger
logger = get_logger('replen_job')
logger.setLevel(logging.INFO)


def check_thresholds(warehouse_id: Optional[int] = None) -> Dict:
    """Scan pick faces and create, unblock or execute replenishment tasks.

    Args:
        warehouse_id: Optional warehouse ID (if not provided, scans all warehouses)

    Returns:
        Dictionary with scan results
    """
    logger.info(f"Checking replenishment thresholds for warehouse_id={warehouse_id}")

    with session_scope() as session:
        service = ReplenishmentService(session)
        results = service.check_thresholds(warehouse_id=warehouse_id)

    return results


def generate_tasks(warehouse_id: Optional[int] = None) -> Dict:
    """Generate replenishment tasks with capacity and overflow routing.

    Args:
        warehouse_id: Optional warehouse ID (if not provided, processes all warehouses)

    Returns:
        Dictionary with generation results
    """
    logger.info(f"Generating replenishment tasks for warehouse_id={warehouse_id}")

    with session_scope() as session:
        service = ReplenishmentService(session)
        results = service.generate_tasks(warehouse_id=warehouse_id)

    return results


def run_replen_job(warehouse_id: Optional[int] = None, with_capacity: bool = False,
                   fail_on_errors: bool = False) -> Dict:
    """Run the periodic replenishment job.

    Args:
        warehouse_id: Optional warehouse ID to process only a specific warehouse
        with_capacity: Use the capacity-aware generation sweep instead of the threshold scan
        fail_on_errors: Raise BatchProcessError if any pair failed

    Returns:
        Dictionary with job results
    """
    log_info = log_manager.batch_start_log(
        'replen_job', {'warehouse_id': warehouse_id, 'with_capacity': with_capacity}
    )
    start_time = log_info['start_time']

    results = {
        'start_time': start_time,
        'end_time': None,
        'duration': None,
        'processes': {}
    }

    try:
        if with_capacity:
            results['processes']['generate_tasks'] = generate_tasks(warehouse_id)
        else:
            results['processes']['check_thresholds'] = check_thresholds(warehouse_id)

        errors = sum(len(p['errors']) for p in results['processes'].values())
        results['success'] = errors == 0

        summary = {
            name: {k: v for k, v in process.items() if k not in ('tasks', 'errors')}
            for name, process in results['processes'].items()
        }
        results['duration'] = log_manager.batch_end_log(log_info, success=results['success'], result_info=summary)
        results['end_time'] = start_time + results['duration']

    except Exception as e:
        log_exception('replen_job', e, "Error during replen job")

        results['success'] = False
        results['error'] = str(e)
        results['duration'] = log_manager.batch_end_log(log_info, success=False, result_info={'error': str(e)})
        results['end_time'] = start_time + results['duration']
        errors = None

    if fail_on_errors and not results['success']:
        raise BatchProcessError(
            "Replenishment job finished with errors",
            details={'error': results.get('error'), 'errors': errors}
        )

    return results


if __name__ == "__main__":
    run_replen_job()
