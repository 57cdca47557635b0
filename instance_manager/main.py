#!/usr/bin/env python

# SPDX-FileCopyrightText: 2025 Weibo, Inc.
#
# SPDX-License-Identifier: Apache-2.0

# -*- coding: utf-8 -*-

"""
Entry point for the instance manager service
"""

import uvicorn

from instance_manager.config.config import HOST, PORT
from shared.logger import setup_logger

logger = setup_logger(__name__)


def main():
    logger.info(f"Starting instance manager on {HOST}:{PORT}")
    uvicorn.run("instance_manager.routers.routers:app", host=HOST, port=PORT)


if __name__ == "__main__":
    main()
