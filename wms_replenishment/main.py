import argparse
import sys

from tabulate import tabulate

from wms_replenishment.config import config
from wms_replenishment.db import db, session_scope
from wms_replenishment.exceptions import WMSError
from wms_replenishment.logging_setup import logger, get_logger


def init_application():
    """Initialize application components."""
    db.initialize()

    log = logger.app_logger
    log.info("WMS replenishment engine initialized")
    log.info(f"Using database: {config.get('DATABASE', 'engine')} at {config.get('DATABASE', 'host')}:{config.get('DATABASE', 'port')}")

    return True


def setup_database(drop_existing=False):
    """Create the schema, optionally dropping existing tables first."""
    log = get_logger('setup')

    db.initialize()
    if drop_existing:
        log.warning("Dropping existing tables")
        db.drop_all_tables()

    db.create_all_tables()
    log.info("Database schema created")
    print("Database schema created")
    return True


def print_scan_results(title, results):
    rows = [
        [key, value] for key, value in results.items()
        if key not in ('tasks', 'errors')
    ]
    rows.append(['errors', len(results['errors'])])
    print(title)
    print(tabulate(rows, headers=['Result', 'Count']))

    if results['errors']:
        print("\nErrors:")
        print(tabulate(
            [[e.get('variant_id', ''), e.get('location_id', ''), e.get('task_id', ''), e['error']]
             for e in results['errors']],
            headers=['Variant', 'Location', 'Task', 'Error']
        ))


def run_scan(args):
    from wms_replenishment.services.replenishment_service import ReplenishmentService

    with session_scope() as session:
        results = ReplenishmentService(session).check_thresholds(warehouse_id=args.warehouse_id)
    print_scan_results("Threshold scan", results)
    return True


def run_generate(args):
    from wms_replenishment.services.replenishment_service import ReplenishmentService

    with session_scope() as session:
        results = ReplenishmentService(session).generate_tasks(warehouse_id=args.warehouse_id)
    print_scan_results("Task generation", results)
    return True


def run_execute(args):
    from wms_replenishment.services.replenishment_service import ReplenishmentService

    with session_scope() as session:
        result = ReplenishmentService(session).execute_task(args.task_id, user_id=args.user)

    print(tabulate([
        ['Task', result['task_id']],
        ['Status', result['status']],
        ['Base units moved', result['moved_base_units']],
        ['Base units remainder', result['base_units_remainder']],
        ['Unblocked', ', '.join(str(t) for t in result['unblocked']) or '-'],
        ['Auto-executed', ', '.join(str(t) for t in result['auto_executed']) or '-']
    ]))
    return True


def run_cancel(args):
    from wms_replenishment.services.replenishment_service import ReplenishmentService

    with session_scope() as session:
        task = ReplenishmentService(session).cancel_task(args.task_id, user_id=args.user)
        print(f"Task #{task.id} {task.status}")
    return True


def list_tasks(args):
    from wms_replenishment.services.replenishment_service import ReplenishmentService

    with session_scope() as session:
        tasks = ReplenishmentService(session).get_active_tasks(
            warehouse_id=args.warehouse_id, status=args.status
        )

        if not tasks:
            print("No replenishment tasks found")
            return True

        table_data = [
            [
                t.id, t.status, t.priority, t.replen_method, t.pick_product_variant_id,
                t.from_location_id or '-', t.to_location_id, t.qty_source_units,
                t.qty_target_units, t.triggered_by, t.depends_on_task_id or '-'
            ]
            for t in tasks
        ]

    print(tabulate(table_data, headers=[
        'Task', 'Status', 'Priority', 'Method', 'Variant', 'From', 'To',
        'Source Qty', 'Target Qty', 'Triggered By', 'Depends On'
    ]))
    print(f"\nTotal Tasks: {len(table_data)}")
    return True


def build_parser():
    parser = argparse.ArgumentParser(description='WMS Pick-Face Replenishment Engine')
    subparsers = parser.add_subparsers(dest='command', help='Commands')

    setup_parser = subparsers.add_parser('setup-db', help='Set up the database schema')
    setup_parser.add_argument('--drop', action='store_true', help='Drop existing tables before setup')

    scan_parser = subparsers.add_parser('scan', help='Check pick faces against their thresholds')
    scan_parser.add_argument('--warehouse-id', type=int, help='Scan a specific warehouse')

    generate_parser = subparsers.add_parser('generate', help='Generate tasks with capacity and overflow routing')
    generate_parser.add_argument('--warehouse-id', type=int, help='Generate for a specific warehouse')

    execute_parser = subparsers.add_parser('execute', help='Execute a replenishment task')
    execute_parser.add_argument('task_id', type=int, help='Task ID')
    execute_parser.add_argument('--user', type=str, help='User executing the task')

    cancel_parser = subparsers.add_parser('cancel', help='Cancel a replenishment task')
    cancel_parser.add_argument('task_id', type=int, help='Task ID')
    cancel_parser.add_argument('--user', type=str, help='User cancelling the task')

    tasks_parser = subparsers.add_parser('tasks', help='List replenishment tasks')
    tasks_parser.add_argument('--warehouse-id', type=int, help='Filter by warehouse')
    tasks_parser.add_argument('--status', type=str, help='Filter by status (default: all active)')

    return parser


COMMANDS = {
    'scan': run_scan,
    'generate': run_generate,
    'execute': run_execute,
    'cancel': run_cancel,
    'tasks': list_tasks
}


def main(argv=None):
    """Main application entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    if args.command == 'setup-db':
        setup_database(args.drop)
        return 0

    init_application()

    try:
        COMMANDS[args.command](args)
    except WMSError as e:
        get_logger('cli').error(f"{args.command} failed: {str(e)}")
        print(f"Error: {str(e)}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
