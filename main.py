#!/usr/bin/env python3

#
# Copyright (C) 2024-2025 biomodal. All rights reserved.
#

# Import the Cloud Function handler from kdrive_backup
from kdrive_backup import backup_from_environment, kdrive_backup_handler

# This is the main entry point that Cloud Functions will use
# The actual implementation is in kdrive_backup.py

if __name__ == "__main__":
    backup_from_environment()
