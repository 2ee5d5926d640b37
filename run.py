#!/usr/bin/env python3
"""Backup runner"""
from cloudkeeper.cli import cli

if __name__ == '__main__':
    # Same as `cloudkeeper run` with settings from $CLOUDKEEPER_SETTINGS
    cli(['run'], obj={})
