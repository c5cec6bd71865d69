from shipyard.collaborators.act import ActReplay
from shipyard.collaborators.base import (
    ContainerReplay,
    NativeRemote,
    ProcessResult,
    QueueTimeSource,
    ReplayResult,
    SbomGenerator,
    Signer,
)
from shipyard.collaborators.github import GhQueueTimeSource
from shipyard.collaborators.process import run_process
from shipyard.collaborators.resilient import (
    ResilientNativeRemote,
    ResilientQueueTimeSource,
    RetryPolicy,
    call_with_retries,
)
from shipyard.collaborators.signing import MinisignSigner, SyftSbomGenerator
from shipyard.collaborators.ssh import SshRemote

__all__ = [
    "ActReplay",
    "ContainerReplay",
    "GhQueueTimeSource",
    "MinisignSigner",
    "NativeRemote",
    "ProcessResult",
    "QueueTimeSource",
    "ReplayResult",
    "ResilientNativeRemote",
    "ResilientQueueTimeSource",
    "RetryPolicy",
    "SbomGenerator",
    "Signer",
    "SshRemote",
    "SyftSbomGenerator",
    "call_with_retries",
    "run_process",
]
