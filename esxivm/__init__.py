"""Declarative VM provisioning and reconciliation for fleets of ESXi hypervisors."""

__version__ = '0.3.0'
