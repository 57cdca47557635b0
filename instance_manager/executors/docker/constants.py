#!/usr/bin/env python

# SPDX-FileCopyrightText: 2025 Weibo, Inc.
#
# SPDX-License-Identifier: Apache-2.0

# -*- coding: utf-8 -*-

"""
Docker constants shared by the instance manager
"""

CONTAINER_PREFIX = "pmc-instance-"

# Labels for management
MANAGED_LABEL = "pmc.managed"
INSTANCE_ID_LABEL = "pmc.instance.id"
OWNER_ID_LABEL = "pmc.owner.id"

# Persistent agent state inside the container
DATA_MOUNT_PATH = "/home/openclaw/.openclaw"
DATA_DIR_PREFIX = "user-"
DATA_SUBDIRS = ("workspace", "skills", "agents", "credentials")

RESTART_POLICY = "unless-stopped"
# Entrypoint fixes ownership of the bind mount, then drops privileges
CONTAINER_USER = "root"

# Instance lifecycle states
STATUS_PENDING = "pending"
STATUS_RUNNING = "running"
STATUS_RESTARTING = "restarting"
STATUS_ERROR = "error"
STATUS_STOPPED = "stopped"

# Multiplexed log stream framing
FRAME_HEADER_SIZE = 8
MAX_FRAME_SIZE = 1024 * 1024
STREAM_STDIN = 0
STREAM_STDOUT = 1
STREAM_STDERR = 2

CONTAINER_NOT_FOUND_MESSAGE = "[Container not found - it may have been deleted]"
