"""Canopy - forest (multi-node cluster) provisioning with a shared registry.

Packages:
    canopy.registry      Forest/node state store (local file or remote HTTP blob)
    canopy.coordination  Placement selection, provisioning orchestrator, providers
    canopy.config        YAML configuration and provider timing
    canopy.cli           ``canopy`` command line entry point
"""

__version__ = "0.3.0"
