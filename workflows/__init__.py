"""Workflow definitions module."""

from workflows.maintenance_workflow import BillingMaintenanceWorkflow, MaintenanceInput

__all__ = ["BillingMaintenanceWorkflow", "MaintenanceInput"]
