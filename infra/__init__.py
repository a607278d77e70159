"""forkpilot infrastructure layer — forge client, execution environments, workspaces.

All GitHub communication goes through :class:`~infra.forge.ForgeClient`; all
file and shell access to a project goes through a
:class:`~infra.sandbox.RemoteEnvironment` owned by a workspace.

Quick start::

    from infra.factory import get_github_client
    from infra.github_client import parse_github_url

    client   = get_github_client()
    upstream = parse_github_url("https://github.com/acme/widget")
    fork     = client.get_fork(upstream, client.get_authenticated_user().login)
"""

from infra.factory import get_github_client
from infra.forge import (
    ForgeClient,
    ForgeError,
    ForgeUser,
    ForkInfo,
    ForkNotReady,
    InvalidRepositoryUrl,
    PRRequest,
    PRResult,
    Upstream,
)
from infra.github_client import GitHubClient, parse_github_url
from infra.sandbox import (
    CommandResult,
    E2BEnvironment,
    LocalEnvironment,
    RemoteEnvironment,
    SandboxError,
    create_environment,
)
from infra.workspace import (
    Workspace,
    WorkspaceError,
    WorkspaceRegistry,
    clone_repository,
    get_workspace_registry,
)

__all__ = [
    # Protocol & models
    "ForgeClient",
    "ForgeError",
    "ForgeUser",
    "ForkInfo",
    "ForkNotReady",
    "InvalidRepositoryUrl",
    "PRRequest",
    "PRResult",
    "Upstream",
    # Clients
    "GitHubClient",
    "get_github_client",
    "parse_github_url",
    # Environments
    "CommandResult",
    "E2BEnvironment",
    "LocalEnvironment",
    "RemoteEnvironment",
    "SandboxError",
    "create_environment",
    # Workspace
    "Workspace",
    "WorkspaceError",
    "WorkspaceRegistry",
    "clone_repository",
    "get_workspace_registry",
]
