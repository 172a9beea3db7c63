"""
Maintenance module.
Periodic entitlement repair and exhausted build job reporting.
"""

from buildqueue.maintenance.main import Maintenance, MaintenanceReport, run

__all__ = ["Maintenance", "MaintenanceReport", "run"]
