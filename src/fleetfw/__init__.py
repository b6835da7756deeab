"""
Fleet firewall controller.

Compiles per-host zone firewall policy into nftables rulesets, applies
them to the managed hosts, and provides packet tracing and an offline
trace simulator.
"""

__version__ = "1.0.0"
__author__ = "Fleet Infrastructure Team"
