#!/usr/bin/env python3

"""
kubecli: list, switch and prune the entries of your kubeconfig from the command line.

Usage:
  kubecli config [-path <file>] SUBCOMMAND [options]

Reading is done here, with PyYAML. Every change to the kubeconfig file is made by
kubectl (config unset / use-context / set-context), so kubectl must be on the PATH.
The kubeconfig file is located from the -path option, then the 'kube-config-path'
environment variable, then ~/.kube/config.
"""

import os
import re
import sys
import pwd
import logging
import argparse
import subprocess

import yaml

logger = logging.getLogger(__name__)

PROG = "kubecli"
OUTPUT_PREFIX = "kubecli 🍻  "
KUBECTL = "kubectl"
PATH_ENV_VAR = "kube-config-path"
PATH_HELP = "path of kube config file, default to `$HOME/.kube/config`"
SECTIONS = ("clusters", "contexts", "users")
DEFAULT_NAMESPACE = "default"

USAGE = """Available Commands:
  current-context        Display the current-context and its namespace
  delete-cluster REGEX   Delete the clusters matching REGEX from the kubeconfig
  delete-context REGEX   Delete the contexts matching REGEX from the kubeconfig
  delete-user REGEX      Delete the users matching REGEX from the kubeconfig
  get-clusters           Display clusters defined in the kubeconfig
  get-contexts           Display contexts defined in the kubeconfig
  get-users              Display users defined in the kubeconfig
  namespace NAMESPACE    Set the namespace of the current-context
  use-context NAME       Make NAME the current-context

Usage:
  {prog} config [-path <file>] [-debug] SUBCOMMAND [options]
  -path for {path_help}
  -debug to enable debug-level logging

Use "{prog} {{-h|--help}}" for more information.""".format(prog=PROG, path_help=PATH_HELP)


#### Errors

class KubecliError(Exception):
    """Base class for every error that ends a kubecli run."""


class UsageError(KubecliError):
    """Bad command line: missing or unknown subcommand, wrong number of operands."""


class KubeconfigError(KubecliError):
    """The kubeconfig file can't be read, or doesn't decode as a kubeconfig."""


class PatternError(KubecliError):
    """A name pattern given on the command line isn't a valid regular expression."""


class KubectlError(KubecliError):
    """kubectl couldn't be started, exited non-zero, or was handed an argument it would misread."""


#### Kubeconfig model

def _as_str(value):
    if value is None: return ""
    if isinstance(value, bool): return "true" if value else "false"
    return str(value)


def _string_map(value, where):
    """Flatten an inner mapping to str -> str. Scalars are kept as strings,
    nested lists/mappings (e.g. 'extensions') are not interpreted and get dropped."""
    if value is None: return {}
    if not isinstance(value, dict):
        raise KubeconfigError("{}: expected a mapping, got {}".format(where, type(value).__name__))
    flat = {}
    for key, item in value.items():
        if isinstance(item, (dict, list)): continue
        flat[_as_str(key)] = _as_str(item)
    return flat


def _entry(value, where):
    if not isinstance(value, dict):
        raise KubeconfigError("{}: expected a mapping, got {}".format(where, type(value).__name__))
    return value


class Cluster(object):
    """A named cluster. Only the name is used, the inner fields (server, CA...) are kept as-is."""

    def __init__(self, name, cluster=None):
        self.name = name
        self.cluster = cluster or {}

    @classmethod
    def from_dict(cls, data, where="clusters"):
        data = _entry(data, where)
        return cls(_as_str(data.get("name")), _string_map(data.get("cluster"), where + ".cluster"))

    def __repr__(self):
        return "Cluster(name={!r})".format(self.name)


class User(object):
    """A named user. Credentials are never read."""

    def __init__(self, name):
        self.name = name

    @classmethod
    def from_dict(cls, data, where="users"):
        data = _entry(data, where)
        return cls(_as_str(data.get("name")))

    def __repr__(self):
        return "User(name={!r})".format(self.name)


class Context(object):
    """A named (cluster, user, namespace) triple."""

    def __init__(self, name, context=None):
        self.name = name
        self.context = context or {}

    @classmethod
    def from_dict(cls, data, where="contexts"):
        data = _entry(data, where)
        return cls(_as_str(data.get("name")), _string_map(data.get("context"), where + ".context"))

    @property
    def namespace(self):
        """namespace is an optional field within a context"""
        return self.context.get("namespace", DEFAULT_NAMESPACE)

    def __repr__(self):
        return "Context(name={!r}, namespace={!r})".format(self.name, self.namespace)


class KubeConfig(object):
    """The parts of a kubeconfig document that kubecli reads. Unknown keys are ignored."""
    current_context = ""  # name of the current context, "" if unset

    def __init__(self, current_context="", clusters=None, users=None, contexts=None):
        self.current_context = current_context
        self.clusters = clusters or []
        self.users = users or []
        self.contexts = contexts or []

    @classmethod
    def from_dict(cls, doc):
        if doc is None: return cls()
        if not isinstance(doc, dict):
            raise KubeconfigError("kubeconfig: expected a mapping at the top level, got {}".format(
                type(doc).__name__))
        return cls(
            current_context=_as_str(doc.get("current-context")),
            clusters=[Cluster.from_dict(c, "clusters[{}]".format(i))
                      for i, c in enumerate(cls.__sequence(doc, "clusters"))],
            users=[User.from_dict(u, "users[{}]".format(i))
                   for i, u in enumerate(cls.__sequence(doc, "users"))],
            contexts=[Context.from_dict(c, "contexts[{}]".format(i))
                      for i, c in enumerate(cls.__sequence(doc, "contexts"))],
        )

    @classmethod
    def parse(cls, data):
        """Decode the raw bytes (or text) of a kubeconfig file. YAML syntax errors are
        reported with PyYAML's own message."""
        try:
            doc = yaml.safe_load(data)
        except yaml.YAMLError as e:
            raise KubeconfigError(str(e)) from e
        config = cls.from_dict(doc)
        logger.debug("Parsed: {} context(s), {} cluster(s), {} user(s)".format(
            len(config.contexts), len(config.clusters), len(config.users)))
        return config

    @staticmethod
    def __sequence(doc, key):
        items = doc.get(key)
        if items is None: return []
        if not isinstance(items, list):
            raise KubeconfigError("{}: expected a sequence, got {}".format(key, type(items).__name__))
        return items

    def section(self, name):
        """Return the clusters, contexts or users list by its kubeconfig key"""
        if name not in SECTIONS:
            raise ValueError("section must be one of: {}, got '{}'".format(", ".join(SECTIONS), name))
        return getattr(self, name)

    def get_context(self, name):
        for context in self.contexts:
            if context.name == name: return context
        return None

    def namespace_of(self, context_name):
        """Namespace of the named context, 'default' if it has none or doesn't exist"""
        context = self.get_context(context_name)
        if context is None: return DEFAULT_NAMESPACE
        return context.namespace


#### Locating and reading the kubeconfig

def user_home_dir(environ=None):
    """Home of the user running the process (by uid) from the password database, else $HOME"""
    environ = os.environ if environ is None else environ
    try:
        home = pwd.getpwuid(os.getuid()).pw_dir
    except KeyError:
        home = None
    if not home:
        home = environ.get("HOME", "")
    return home


def resolve_kubeconfig_path(flag_value=None, environ=None):
    """-path flag, then the kube-config-path env var, then <home>/.kube/config"""
    environ = os.environ if environ is None else environ
    if flag_value is not None:
        logger.debug("Using kubeconfig from -path: {}".format(flag_value))
        return flag_value
    if PATH_ENV_VAR in environ:
        logger.debug("Using kubeconfig from ${}: {}".format(PATH_ENV_VAR, environ[PATH_ENV_VAR]))
        return environ[PATH_ENV_VAR]
    path = os.path.join(user_home_dir(environ), ".kube", "config")
    logger.debug("Using default kubeconfig: {}".format(path))
    return path


def read_kubeconfig(path):
    try:
        with open(path, "rb") as f:
            return f.read()
    except OSError as e:
        raise KubeconfigError("Cannot read the kubeconfig file '{}': {}".format(
            path, e.strerror or e)) from e


#### kubectl

class Kubectl(object):
    """Runs kubectl, one process at a time, waiting for each to finish."""

    def __init__(self, binary=KUBECTL):
        self.binary = binary

    def run(self, args):
        """Run kubectl with the args list and return its output, stderr merged into stdout"""
        cmd = [self.binary] + list(args)
        cmd_str = " ".join(cmd)
        logger.debug("Running: {}".format(cmd_str))
        try:
            result = subprocess.run(cmd,
                stdout=subprocess.PIPE,   # send stderr to stdout
                stderr=subprocess.STDOUT)
        except OSError as e:
            raise KubectlError("Could not run '{}': {}".format(cmd_str, e)) from e
        output = result.stdout.decode("utf-8", errors="replace").rstrip()
        summary = "\n  Command: {}".format(cmd_str) + \
                  "\n  Return code: {}".format(result.returncode) + \
                  "\n  Output:\n{}".format(output)
        if result.returncode != 0:
            raise KubectlError("kubectl failed:" + summary)
        logger.debug(summary)
        return output

    def unset(self, section, name):
        """kubectl config unset <section>.<name>"""
        if section not in SECTIONS:
            raise ValueError("section must be one of: {}, got '{}'".format(", ".join(SECTIONS), section))
        return self.run(["config", "unset", "{}.{}".format(section, name)])

    def use_context(self, name):
        """kubectl config use-context <name>"""
        self.__check_not_flag("context name", name)
        return self.run(["config", "use-context", name])

    def set_namespace(self, context, namespace):
        """kubectl config set-context <context> --namespace=<namespace>"""
        self.__check_not_flag("context name", context)
        self.__check_not_flag("namespace", namespace)
        return self.run(["config", "set-context", context, "--namespace=" + namespace])

    @staticmethod
    def __check_not_flag(what, value):
        if value.startswith("-"):
            raise KubectlError("Refusing to pass {} '{}' to kubectl: it would be read as a flag".format(
                what, value))


#### Handlers

class Session(object):
    """What one run of kubecli works with: the kubeconfig path, where output goes, and kubectl."""

    def __init__(self, kubeconfig_path, kubectl=None, out=None):
        self.kubeconfig_path = kubeconfig_path
        self.kubectl = kubectl if kubectl is not None else Kubectl()
        self.out = out

    def echo(self, line):
        out = self.out if self.out is not None else sys.stdout
        out.write(OUTPUT_PREFIX + line + "\n")

    def load(self):
        """Read and decode the kubeconfig; done fresh by each handler that needs it"""
        return KubeConfig.parse(read_kubeconfig(self.kubeconfig_path))


def format_context(name, namespace):
    return "NAME: {} NAMESPACE: {}".format(name, namespace)


def compile_pattern(pattern):
    try:
        return re.compile(pattern)
    except re.error as e:
        raise PatternError("Invalid pattern '{}': {}".format(pattern, e)) from e


def handle_current_context(session):
    kubeconfig = session.load()
    current = kubeconfig.current_context
    session.echo(format_context(current, kubeconfig.namespace_of(current)))


def handle_get_clusters(session):
    for cluster in session.load().clusters:
        session.echo(cluster.name)


def handle_get_users(session):
    for user in session.load().users:
        session.echo(user.name)


def handle_get_contexts(session):
    for context in session.load().contexts:
        session.echo(format_context(context.name, context.namespace))


def handle_use_context(session, name):
    """Switch contexts. kubectl checks the name, the kubeconfig isn't read here."""
    session.kubectl.use_context(name)


def handle_namespace(session, namespace):
    current = session.load().current_context
    if not current:
        raise KubeconfigError("The kubeconfig has no current context. Use 'config use-context NAME' to set one.")
    session.kubectl.set_namespace(current, namespace)


def delete_matching(session, section, patterns):
    """For each pattern in turn, unset every entry of the section whose name the
    pattern matches anywhere (re.search). An entry matched by several patterns
    is unset once per pattern."""
    entries = session.load().section(section)
    for pattern in patterns:
        regex = compile_pattern(pattern)
        for entry in entries:
            if regex.search(entry.name):
                logger.info("unset {}.{}".format(section, entry.name))
                session.kubectl.unset(section, entry.name)


def handle_delete_cluster(session, *patterns):
    delete_matching(session, "clusters", patterns)


def handle_delete_context(session, *patterns):
    delete_matching(session, "contexts", patterns)


def handle_delete_user(session, *patterns):
    delete_matching(session, "users", patterns)


#### Dispatch

class Operation(object):
    """A config subcommand: its handler and how many operands it takes (max_args None = no limit)"""

    def __init__(self, handler, min_args=0, max_args=0, operand=None):
        self.handler = handler
        self.min_args = min_args
        self.max_args = max_args
        self.operand = operand

    def check_arity(self, name, operands):
        if len(operands) < self.min_args:
            raise UsageError("{} {} required".format(name, self.operand))
        if self.max_args is not None and len(operands) > self.max_args:
            raise UsageError("{} takes {} operand(s), got {}: {}".format(
                name, self.max_args, len(operands), " ".join(operands)))


OPERATIONS = {
    "current-context": Operation(handle_current_context),
    "get-clusters": Operation(handle_get_clusters),
    "get-contexts": Operation(handle_get_contexts),
    "get-users": Operation(handle_get_users),
    "use-context": Operation(handle_use_context, 1, 1, "context NAME"),
    "namespace": Operation(handle_namespace, 1, 1, "NAMESPACE"),
    "delete-cluster": Operation(handle_delete_cluster, 1, None, "cluster NAME"),
    "delete-context": Operation(handle_delete_context, 1, None, "context NAME"),
    "delete-user": Operation(handle_delete_user, 1, None, "user NAME"),
}

HELP_FLAGS = ("-h", "-help", "--help")


class ConfigArgumentParser(argparse.ArgumentParser):
    """argparse raises SystemExit on bad input; we want a UsageError instead."""

    def error(self, message):
        raise UsageError(message)


def get_config_parser():
    parser = ConfigArgumentParser(prog="{} config".format(PROG), add_help=False,
        allow_abbrev=False)
    parser.add_argument('-path', '--path', metavar='<file>', dest='path', default=None, help=PATH_HELP)
    parser.add_argument('-d', '-debug', '--debug', dest='debug', action='store_true',
        help="enable debug-level logging")
    parser.add_argument(*HELP_FLAGS, dest='help', action='store_true', help="show usage")
    # everything from the first positional on, dashes included (regexes may start with '-')
    parser.add_argument('args', nargs=argparse.REMAINDER)
    return parser


def print_usage(out=None):
    out = out if out is not None else sys.stdout
    for line in USAGE.splitlines():
        out.write(OUTPUT_PREFIX + line + "\n")


def run(argv, kubectl=None, out=None, environ=None):
    """Parse argv (without the program name) and run the one operation it names.
    Raises a KubecliError subclass on any failure."""
    if len(argv) < 1:
        raise UsageError("subcommand required")
    verb = argv[0]
    if verb in HELP_FLAGS:
        print_usage(out)
        return
    if verb != "config":
        raise UsageError("unknown subcommand '{}'".format(verb))

    args = get_config_parser().parse_args(argv[1:])
    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)
    if args.help:
        print_usage(out)
        return
    if not args.args:
        raise UsageError("SUBCOMMAND for config command required")

    name, operands = args.args[0], args.args[1:]
    operation = OPERATIONS.get(name)
    if operation is None:
        raise UsageError("unknown command '{}'".format(name))
    operation.check_arity(name, operands)

    session = Session(resolve_kubeconfig_path(args.path, environ), kubectl=kubectl, out=out)
    logger.debug("Running '{}' against {}".format(name, session.kubeconfig_path))
    operation.handler(session, *operands)


def main(argv=None, kubectl=None, out=None, environ=None):
    logging.basicConfig(format="{} %(levelname)s %(message)s".format(PROG), level=logging.WARNING)
    argv = sys.argv[1:] if argv is None else argv
    try:
        run(argv, kubectl=kubectl, out=out, environ=environ)
    except UsageError as e:
        logger.error(e)
        print_usage(out)
        return 1
    except KubecliError as e:
        logger.error(e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
