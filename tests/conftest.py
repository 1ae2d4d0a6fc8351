"""
Shared pytest fixtures for kubecli tests.

- RecordingKubectl: stands in for kubectl, records each argv and can be told to fail
- kubeconfig_file: writes a kubeconfig document to a temp file
- cli: runs kubecli.main against that file and collects the output payloads
"""

import io
import os
import sys
import textwrap

import pytest

# Make the repo root importable without installing
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import kubecli  # noqa: E402


class RecordingKubectl(kubecli.Kubectl):
    """Keeps the argument building and checks of Kubectl, but records argv instead of spawning."""

    def __init__(self, fail_on=None, output="", returncode=1):
        super().__init__()
        self.calls = []
        self.fail_on = fail_on
        self.output = output
        self.returncode = returncode

    def run(self, args):
        args = list(args)
        self.calls.append(args)
        if self.fail_on is not None and self.fail_on(args):
            raise kubecli.KubectlError("kubectl failed:\n  Command: {}\n  Return code: {}\n  Output:\n{}".format(
                " ".join([self.binary] + args), self.returncode, self.output))
        return self.output


class CliResult(object):

    def __init__(self, status, raw):
        self.status = status
        self.raw = raw

    @property
    def lines(self):
        """Output payloads with the tool tag stripped"""
        payloads = []
        for line in self.raw.splitlines():
            assert line.startswith(kubecli.OUTPUT_PREFIX), line
            payloads.append(line[len(kubecli.OUTPUT_PREFIX):])
        return payloads


@pytest.fixture
def kubectl():
    return RecordingKubectl()


@pytest.fixture
def kubeconfig_file(tmp_path):
    """Call with a YAML string; returns the path of the written file."""
    def write(content, name="config"):
        path = tmp_path / name
        path.write_text(textwrap.dedent(content))
        return str(path)
    return write


@pytest.fixture
def cli(kubectl):
    """Run kubecli with an isolated environment; -path is added when a path is given."""
    def run(*args, path=None, environ=None):
        argv = list(args)
        if path is not None:
            argv = [argv[0], "-path", path] + argv[1:]
        out = io.StringIO()
        status = kubecli.main(argv, kubectl=kubectl, out=out,
                              environ={} if environ is None else environ)
        return CliResult(status, out.getvalue())
    return run


SAMPLE_KUBECONFIG = """\
apiVersion: v1
kind: Config
preferences: {}
current-context: dev
clusters:
- name: a
  cluster:
    server: https://a.example.com:6443
    insecure-skip-tls-verify: true
- name: b
  cluster:
    server: https://b.example.com:6443
- name: c
  cluster:
    server: https://c.example.com:6443
users:
- name: alice
  user:
    token: abc123
- name: bob
  user:
    client-certificate-data: Zm9v
contexts:
- name: dev
  context:
    cluster: a
    user: alice
    namespace: web
- name: prod
  context:
    cluster: b
    user: bob
    namespace: api
- name: staging
  context:
    cluster: c
    user: bob
"""


@pytest.fixture
def sample_path(kubeconfig_file):
    return kubeconfig_file(SAMPLE_KUBECONFIG)
