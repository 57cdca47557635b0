# SPDX-FileCopyrightText: 2025 Weibo, Inc.
#
# SPDX-License-Identifier: Apache-2.0

# coding: utf-8
import os

"""
Global configuration for the instance manager.
"""

# Docker daemon socket. DOCKER_HOST may be given as unix:///path
DOCKER_SOCKET = (
    os.getenv("DOCKER_HOST") or os.getenv("DOCKER_SOCKET") or "/var/run/docker.sock"
)
if DOCKER_SOCKET.startswith("unix://"):
    DOCKER_SOCKET = DOCKER_SOCKET[len("unix://"):]
DOCKER_API_TIMEOUT = float(os.getenv("DOCKER_API_TIMEOUT", "30"))

# Images
BASE_IMAGE_NAME = os.getenv("BASE_IMAGE_NAME", "pmc-base:latest")
INSTANCE_IMAGE_NAME = os.getenv("INSTANCE_IMAGE_NAME", "pmc-openclaw-instance:latest")

# Dockerfile build contexts
INSTANCE_DOCKERFILE_DIR = os.path.abspath(
    os.getenv("INSTANCE_DOCKERFILE_DIR", "./instance")
)
BASE_IMAGE_DOCKERFILE_DIR = os.path.abspath(
    os.getenv("BASE_IMAGE_DOCKERFILE_DIR", os.path.join(INSTANCE_DOCKERFILE_DIR, "base-image"))
)

# Build output handling
BUILD_LOG_INTERVAL = float(os.getenv("BUILD_LOG_INTERVAL", "5"))
BUILD_TAIL_LINES = int(os.getenv("BUILD_TAIL_LINES", "30"))
# 0 means no limit
BUILD_TIMEOUT = float(os.getenv("BUILD_TIMEOUT", "0"))

# Per-owner data directories, bind-mounted into each container.
# Docker requires absolute paths for bind mounts
INSTANCES_DATA_DIR = os.path.abspath(os.getenv("INSTANCES_DATA_DIR", "./data/instances"))

# Container resources
CONTAINER_MEMORY_MB = int(os.getenv("CONTAINER_MEMORY_MB", "800"))
CONTAINER_NANO_CPUS = int(os.getenv("CONTAINER_NANO_CPUS", "500000000"))
CONTAINER_DNS = os.getenv("CONTAINER_DNS", "8.8.8.8,1.1.1.1").split(",")

# Subscription enforcement
ENFORCER_INTERVAL = float(os.getenv("ENFORCER_INTERVAL", "60"))
ENFORCER_ENABLED = os.getenv("ENFORCER_ENABLED", "true").lower() == "true"

# Database
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./data/instances.db")

# Admin API bearer token, admin routes answer 503 when unset
ADMIN_TOKEN = os.getenv("ADMIN_TOKEN", "")

# HTTP server
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "8080"))
