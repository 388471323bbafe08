"""
Network Device Configuration Archiver
=====================================

Periodically logs into network devices over TELNET, SSH, raw TCP or a local
program, drives the vendor CLI dialog, captures the output of a command list
and keeps every capture as a versioned snapshot in a local repository.
"""

__version__ = "1.0.0"
__author__ = "Network Operations Team"

APP_NAME = "config-archiver"
