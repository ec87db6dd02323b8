"""
Steward - A multi-application manager for nginx-fronted Python web apps.

Tracks a fleet of applications, keeps their ports unique, and provisions the
systemd unit, nginx site and ufw rules each one needs on a single host.
"""

__version__ = "0.1.0"
