#!/usr/bin/env python

# SPDX-FileCopyrightText: 2025 Weibo, Inc.
#
# SPDX-License-Identifier: Apache-2.0

# -*- coding: utf-8 -*-

"""
Exceptions raised by the Docker layer
"""

from typing import List, Optional


class DockerError(Exception):
    """Base class for container runtime errors"""


class DaemonUnreachableError(DockerError):
    """The Docker daemon could not be reached"""


class NotFoundError(DockerError):
    """The runtime reports the target object does not exist"""


class RuntimeApiError(DockerError):
    """Any other non-success response from the Docker Engine API"""

    def __init__(self, status_code: int, message: str):
        super().__init__(f"Docker API error {status_code}: {message}")
        self.status_code = status_code
        self.message = message


class BuildFailureError(DockerError):
    """An image build exited with a non-zero code"""

    def __init__(self, image: str, exit_code: Optional[int], tail: Optional[List[str]] = None, reason: str = ""):
        self.image = image
        self.exit_code = exit_code
        self.tail = list(tail or [])
        message = reason or f"Docker build of {image} failed with exit code {exit_code}"
        super().__init__(message)
