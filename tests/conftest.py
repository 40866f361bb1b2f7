from types import SimpleNamespace

import pytest

from zfsinstall import command
from zfsinstall.command import Result
from zfsinstall.errors import CommandError
from zfsinstall.plan import (
    DEFAULT_BPOOL_CREATE_OPTIONS,
    DEFAULT_DATASET_CREATE_OPTIONS,
    DEFAULT_RPOOL_CREATE_OPTIONS,
    InstallationPlan,
    VdevGroup,
    VdevKind,
)
from zfsinstall.secret import Secret


class FakeRunner:
    """Records every command and answers with scripted results keyed by argv prefix"""

    def __init__(self):
        self.calls = []
        self.spawned = []
        self.responses = []
        self.stream_output = []

    def respond(self, prefix, out="", rc=0, err=""):
        """Script the result of commands starting with ``prefix``; later entries win.

        ``out`` may be a callable taking the argv and returning a Result.
        """
        self.responses.insert(0, (list(prefix), out if callable(out) else Result(rc, out, err, 0.0)))

    def run(self, cmd, check=True, input=None, timeout=None, env=None):
        cmd = [str(c) for c in cmd]
        self.calls.append(SimpleNamespace(cmd=cmd, input=input))
        result = Result(0, "", "", 0.0)
        for prefix, response in self.responses:
            if cmd[:len(prefix)] == prefix:
                result = response(cmd) if callable(response) else response
                break
        if check and result.rc != 0:
            raise CommandError(cmd, result.rc, result.out, result.err)
        return result

    def chroot(self, root, cmd, check=True, input=None):
        if isinstance(cmd, str):
            cmd = ["bash", "-c", cmd]
        return self.run(["chroot", root] + list(cmd), check=check, input=input)

    def stream(self, cmd, separators="\r\n"):
        self.calls.append(SimpleNamespace(cmd=[str(c) for c in cmd], input=None))
        return iter(self.stream_output)

    def spawn(self, cmd):
        self.spawned.append(list(cmd))
        return None

    @property
    def commands(self):
        return [call.cmd for call in self.calls]

    def find(self, *prefix):
        return [call for call in self.calls if call.cmd[:len(prefix)] == list(prefix)]


class FakePrompt:
    def __init__(self, answer):
        self.answer = answer

    def execute(self):
        return self.answer


class FakeInquirer:
    """Stands in for ``InquirerPy.inquirer``; answers prompts from a script, in order"""

    def __init__(self, answers=()):
        self.answers = list(answers)
        self.prompts = []

    def _next(self, kind, kwargs):
        self.prompts.append((kind, kwargs))
        if not self.answers:
            raise AssertionError(f"Unexpected {kind} prompt: {kwargs.get('message')}")
        return FakePrompt(self.answers.pop(0))

    def text(self, **kwargs):
        return self._next("text", kwargs)

    def select(self, **kwargs):
        return self._next("select", kwargs)

    def confirm(self, **kwargs):
        return self._next("confirm", kwargs)

    def secret(self, **kwargs):
        return self._next("secret", kwargs)

    def checkbox(self, **kwargs):
        return self._next("checkbox", kwargs)


@pytest.fixture(autouse=True)
def log_dir(tmp_path, monkeypatch):
    path = tmp_path / "logs"
    monkeypatch.setattr(command, "LOG_DIR", str(path))
    return path


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def make_plan():
    def factory(finalize=True, **overrides):
        values = dict(
            ubuntu_version="22.04",
            install_method="debootstrap",
            username="alice",
            user_password=Secret("hunter22"),
            user_fullname="Alice Example",
            hostname="zfsbox",
            timezone="UTC",
            locale="en_US.UTF-8",
            keyboard_layout="us",
            desktop_environment="minimal",
            bootloader="grub",
            enable_ssh=False,
            install_timeshift=False,
            selected_disks=["/dev/disk/by-id/ata-X"],
            vdev_groups=[VdevGroup((0,), VdevKind.STRIPE)],
            passphrase=Secret(""),
            boot_partition_size="2048M",
            swap_size=0,
            free_tail_space=0,
            rpool_name="rpool",
            bpool_create_options=list(DEFAULT_BPOOL_CREATE_OPTIONS),
            rpool_create_options=list(DEFAULT_RPOOL_CREATE_OPTIONS),
            dataset_create_options=DEFAULT_DATASET_CREATE_OPTIONS,
        )
        values.update(overrides)
        plan = InstallationPlan(**values)
        return plan.finalize() if finalize else plan

    return factory
