#!/usr/bin/env python
"""Command-line entry point for the bed control service.

Besides Django's own commands this exposes the scheduled jobs of the
capacity app: ``record_census_snapshot``, ``generate_forecasts``,
``expire_scheduled_arrivals`` and ``flush_outbound_events``.
"""
import os
import sys


def main() -> None:
    os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'bedcontrol.settings')
    try:
        from django.core.management import execute_from_command_line  # type: ignore
    except ImportError as exc:
        raise ImportError(
            "Couldn't import Django. Is it installed and is the virtual environment active?"
        ) from exc
    execute_from_command_line(sys.argv)


if __name__ == '__main__':
    main()
