#!/usr/bin/env python

# SPDX-FileCopyrightText: 2025 Weibo, Inc.
#
# SPDX-License-Identifier: Apache-2.0

# -*- coding: utf-8 -*-

"""
Image builder for the two-tier instance image set.

The base image holds the runtime and the agent dependencies and changes
rarely. The instance image layers config, skills and scripts on top of it
and is rebuilt on every rollout.
"""

import asyncio
import os
import re
import time
from collections import deque
from enum import Enum
from typing import Deque, Dict, List, Optional

from instance_manager.config.config import (
    BASE_IMAGE_DOCKERFILE_DIR,
    BASE_IMAGE_NAME,
    BUILD_LOG_INTERVAL,
    BUILD_TAIL_LINES,
    BUILD_TIMEOUT,
    INSTANCE_DOCKERFILE_DIR,
    INSTANCE_IMAGE_NAME,
)
from instance_manager.executors.docker.client import DockerClient, get_docker_client
from instance_manager.executors.docker.errors import BuildFailureError
from shared.logger import setup_logger

logger = setup_logger(__name__)

# BuildKit "#5 [2/6] COPY ...", classic "Step 2/6 : RUN ..."
_STEP_RE = re.compile(r"^#\d+\s+\[\d+/\d+\]\s+")
_CLASSIC_STEP_RE = re.compile(r"^Step\s+\d+/\d+", re.IGNORECASE)
_DONE_RE = re.compile(r"^#\d+\s+(DONE|CACHED)")
_EXPORT_RE = re.compile(r"^#\d+\s+exporting")
# "#8 42.1 Installing..." -> step id, in-step output
_RUN_OUTPUT_RE = re.compile(r"^#(\d+)\s+[\d.]+\s+(.+)")

MAX_DISPLAY_WIDTH = 120
FAILURE_TAIL_LINES = 20
READ_CHUNK_SIZE = 64 * 1024
# Output lines longer than this are cut
MAX_LINE_BYTES = 64 * 1024
MAX_TAIL_LINE_WIDTH = 500


class BuildState(str, Enum):
    """Build state of the image set"""

    NOT_READY = "not_ready"
    BUILDING = "building"
    READY = "ready"


class BuildOutputFilter:
    """
    Classify `docker build --progress=plain` output lines.

    Step boundaries and completion markers always pass. In-step output
    (apt-get, npm install...) is throttled per build step.
    """

    def __init__(self, interval: float = BUILD_LOG_INTERVAL, clock=time.monotonic):
        self.interval = interval
        self._clock = clock
        self._last_emit: Dict[str, float] = {}

    def classify(self, raw: str) -> Optional[str]:
        """Return the line to log, or None if it should be dropped"""
        line = raw.strip()
        if not line:
            return None

        if _STEP_RE.match(line) or _DONE_RE.match(line) or _EXPORT_RE.match(line):
            return line

        run_output = _RUN_OUTPUT_RE.match(line)
        if run_output:
            step_id, text = run_output.group(1), run_output.group(2)
            now = self._clock()
            last = self._last_emit.get(step_id)
            if last is not None and now - last < self.interval:
                return None
            self._last_emit[step_id] = now
            if len(text) > MAX_DISPLAY_WIDTH:
                text = text[: MAX_DISPLAY_WIDTH - 3] + "..."
            return f"#{step_id} {text}"

        if _CLASSIC_STEP_RE.match(line) or "naming to" in line:
            return line

        return None


async def run_docker_build(
    image_name: str,
    context_dir: str,
    build_args: Optional[List[str]] = None,
    no_cache: bool = False,
    timeout: float = BUILD_TIMEOUT,
) -> None:
    """
    Run `docker build` for one image, streaming filtered output to the log.

    Raises:
        BuildFailureError: build context missing, build exited non-zero or
            exceeded the timeout
    """
    logger.info(f"Building {image_name} from {context_dir}")
    if not os.path.isdir(context_dir):
        raise BuildFailureError(
            image_name, None, reason=f"Dockerfile directory not found: {context_dir}"
        )

    cmd = ["docker", "build", "--progress=plain", "-t", image_name]
    if no_cache:
        cmd.append("--no-cache")
    cmd.extend(build_args or [])
    cmd.append(".")

    output_filter = BuildOutputFilter()
    tail: Deque[str] = deque(maxlen=BUILD_TAIL_LINES)
    start = time.monotonic()

    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            cwd=context_dir,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise BuildFailureError(
            image_name, None, reason=f"Failed to spawn docker build: {e}"
        ) from e

    def handle_line(raw: bytes, keep_tail: bool) -> None:
        line = raw[:MAX_LINE_BYTES].decode("utf-8", errors="replace").strip()
        if not line:
            return
        shown = output_filter.classify(line)
        if shown:
            logger.info(f"  {shown}")
        if keep_tail:
            tail.append(line[:MAX_TAIL_LINE_WIDTH])

    async def pump(stream: asyncio.StreamReader, keep_tail: bool) -> None:
        # BuildKit with --progress=plain writes to both stdout and stderr.
        # Lines can exceed the StreamReader limit, so no readline()
        pending = b""
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            *lines, pending = (pending + chunk).split(b"\n")
            if len(pending) > MAX_LINE_BYTES:
                lines.append(pending)
                pending = b""
            for raw in lines:
                handle_line(raw, keep_tail)
        if pending:
            handle_line(pending, keep_tail)

    pumps = [
        asyncio.ensure_future(pump(proc.stdout, False)),
        asyncio.ensure_future(pump(proc.stderr, True)),
    ]

    async def wait_for_exit() -> int:
        await asyncio.gather(*pumps)
        return await proc.wait()

    try:
        if timeout and timeout > 0:
            exit_code = await asyncio.wait_for(wait_for_exit(), timeout)
        else:
            exit_code = await wait_for_exit()
    except asyncio.TimeoutError:
        raise BuildFailureError(
            image_name,
            None,
            tail,
            reason=f"Docker build of {image_name} timed out after {timeout:.0f}s",
        )
    finally:
        for task in pumps:
            task.cancel()
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()

    elapsed = time.monotonic() - start
    if exit_code != 0:
        logger.error(f"Build of {image_name} failed (exit {exit_code}, {elapsed:.1f}s):")
        for line in list(tail)[-FAILURE_TAIL_LINES:]:
            logger.error(f"  {line}")
        raise BuildFailureError(image_name, exit_code, list(tail))

    logger.info(f"Built {image_name} in {elapsed:.1f}s")


class ImageBuilder:
    """
    Makes sure the base and instance images exist locally.

    All concurrent callers of ensure_images_ready() share a single build.
    """

    def __init__(
        self,
        docker: Optional[DockerClient] = None,
        base_image: str = BASE_IMAGE_NAME,
        instance_image: str = INSTANCE_IMAGE_NAME,
        base_context: str = BASE_IMAGE_DOCKERFILE_DIR,
        instance_context: str = INSTANCE_DOCKERFILE_DIR,
        build=run_docker_build,
    ):
        self.docker = docker or get_docker_client()
        self.base_image = base_image
        self.instance_image = instance_image
        self.base_context = base_context
        self.instance_context = instance_context
        self._build = build
        self._state = BuildState.NOT_READY
        self._task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()

    @property
    def state(self) -> BuildState:
        return self._state

    async def ensure_images_ready(self) -> None:
        """Build whichever image is missing. Returns at once when ready."""
        async with self._lock:
            if self._state == BuildState.READY:
                return
            if self._task is None:
                self._state = BuildState.BUILDING
                self._task = asyncio.ensure_future(self._build_missing())
                self._task.add_done_callback(self._on_build_done)
            task = self._task
        await asyncio.shield(task)

    def _on_build_done(self, task: asyncio.Task) -> None:
        self._task = None
        if task.cancelled() or task.exception() is not None:
            self._state = BuildState.NOT_READY
        else:
            self._state = BuildState.READY

    async def _build_missing(self) -> None:
        start = time.monotonic()
        logger.info("Checking Docker images...")

        await self.docker.ping()
        logger.info("Docker daemon is reachable")

        base_exists, instance_exists = await asyncio.gather(
            self.docker.image_exists(self.base_image),
            self.docker.image_exists(self.instance_image),
        )

        if base_exists and instance_exists:
            logger.info("All images ready, nothing to build")
            return

        if not base_exists:
            logger.info(f"Base image missing, building {self.base_image} (slow the first time)...")
            await self._build(self.base_image, self.base_context, None, no_cache=False)
        else:
            logger.info(f"Base image {self.base_image} exists")

        if not instance_exists:
            logger.info(f"Instance image missing, building {self.instance_image}...")
            await self._build_instance_image()
        else:
            logger.info(f"Instance image {self.instance_image} exists")

        logger.info(f"All images ready ({time.monotonic() - start:.1f}s total)")

    async def _build_instance_image(self, no_cache: bool = False) -> None:
        # The instance Dockerfile declares BASE_IMAGE as a build argument
        build_args = ["--build-arg", f"BASE_IMAGE={self.base_image}"]
        await self._build(self.instance_image, self.instance_context, build_args, no_cache=no_cache)

    async def force_rebuild_instance_image(self) -> None:
        """
        Rebuild the instance image without cache.

        Waits for any build already in flight so two builds never overlap.
        """
        while True:
            async with self._lock:
                task = self._task
                if task is None:
                    self._state = BuildState.BUILDING
                    task = asyncio.ensure_future(self._build_instance_image(no_cache=True))
                    task.add_done_callback(self._on_build_done)
                    self._task = task
                    break
            try:
                await asyncio.shield(task)
            except Exception as e:
                logger.warning(f"In-flight image build failed before forced rebuild: {e}")

        logger.info(f"Force rebuilding {self.instance_image}...")
        await asyncio.shield(task)
