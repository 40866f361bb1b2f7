#!/usr/bin/env python3
# Command Module
# Structured subprocess execution, command logging and bounded waits

import datetime
import json
import os
import shlex
import subprocess
import tempfile
import time

from .errors import CommandError

LOG_DIR = None


def log_dir():
    """Return the installer log directory, creating it when needed"""
    path = LOG_DIR or os.environ.get("ZFS_LOG_DIR") or os.path.join(tempfile.gettempdir(), "zfs-installer")
    os.makedirs(path, exist_ok=True)
    return path


def log_path(name):
    return os.path.join(log_dir(), name)


def _log_event(kind, cmd, rc=None, out=None, err=None, dur=None):
    ts = datetime.datetime.now(datetime.timezone.utc).isoformat()
    line = {"ts": ts, "kind": kind, "cmd": list(cmd), "rc": rc, "dur": dur, "out": out, "err": err}
    try:
        with open(log_path("install.log"), "a", encoding="utf-8") as f:
            f.write(json.dumps(line) + "\n")
    except OSError:
        # The command log is diagnostic only; a read-only tempdir must not abort the install
        pass


class Result:
    def __init__(self, rc, out, err, duration):
        self.rc, self.out, self.err, self.duration = rc, out, err, duration

    @property
    def ok(self):
        return self.rc == 0


class CommandRunner:
    """Runs privileged external commands with captured output.

    Commands are always argv lists; nothing is interpolated into a shell
    string unless the caller explicitly asks for ``sh -c``. Secrets travel
    through ``input``, which becomes the child's stdin pipe and is never
    logged.
    """

    def __init__(self, dry_run=False):
        self.dry_run = dry_run

    def run(self, cmd, check=True, input=None, timeout=None, env=None):
        cmd = [str(c) for c in cmd]
        _log_event("exec", cmd)
        if self.dry_run:
            return Result(0, "DRY-RUN: " + " ".join(shlex.quote(c) for c in cmd), "", 0.0)

        started = time.time()
        proc = subprocess.run(
            cmd,
            input=input,
            capture_output=True,
            text=True,
            timeout=timeout,
            env=env,
        )
        dur = time.time() - started
        _log_event("done", cmd, rc=proc.returncode, out=proc.stdout, err=proc.stderr, dur=dur)

        if check and proc.returncode != 0:
            raise CommandError(cmd, proc.returncode, proc.stdout, proc.stderr)
        return Result(proc.returncode, proc.stdout, proc.stderr, dur)

    def chroot(self, root, cmd, check=True, input=None):
        """Run a command inside the jail rooted at ``root``"""
        if isinstance(cmd, str):
            cmd = ["bash", "-c", cmd]
        return self.run(["chroot", root] + list(cmd), check=check, input=input)

    def stream(self, cmd, separators="\r\n"):
        """Run a command and yield its stdout in chunks split on ``separators``"""
        cmd = [str(c) for c in cmd]
        _log_event("exec", cmd)
        if self.dry_run:
            return

        started = time.time()
        # stderr goes to a file so a chatty command cannot block on a full pipe while stdout is read
        with tempfile.TemporaryFile(mode="w+") as errors:
            proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=errors, text=True)
            chunk = ""
            while True:
                char = proc.stdout.read(1)
                if not char:
                    break
                if char in separators:
                    if chunk:
                        yield chunk
                    chunk = ""
                else:
                    chunk += char
            if chunk:
                yield chunk

            rc = proc.wait()
            errors.seek(0)
            err = errors.read()
        _log_event("done", cmd, rc=rc, err=err, dur=time.time() - started)
        if rc != 0:
            raise CommandError(cmd, rc, "", err)

    def spawn(self, cmd):
        """Start a command in the background and return its process handle"""
        cmd = [str(c) for c in cmd]
        _log_event("spawn", cmd)
        if self.dry_run:
            return None
        return subprocess.Popen(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)


def udev_settle(runner, timeout=10):
    runner.run(["udevadm", "settle", "--timeout", str(timeout)], check=False)


def wait_for(predicate, timeout, interval, sleep=time.sleep, clock=time.monotonic):
    """Poll ``predicate`` every ``interval`` seconds until it holds.

    Returns True as soon as the predicate is satisfied, False once
    ``timeout`` seconds have elapsed without it being satisfied. The caller
    decides whether a timeout is fatal.
    """
    deadline = clock() + timeout
    while True:
        if predicate():
            return True
        if clock() >= deadline:
            return False
        sleep(interval)
