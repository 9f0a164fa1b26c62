"""Tunables shared by the graph, trust engine and tokenization bridge"""
from dataclasses import dataclass

from .models import SUPPORTED_CHAINS


@dataclass(frozen=True)
class MeshSettings:
    # Pathway strength: decays faster than it grows
    success_delta: float = 0.05
    failure_delta: float = 0.1

    # Agent trust
    trust_success_delta: float = 0.01
    trust_failure_delta: float = 0.03
    trust_neutral: float = 0.5
    trust_half_life_seconds: float = 7 * 24 * 3600
    trust_decay_interval_seconds: float = 3600.0

    # Chain confirmation
    confirm_deadline_seconds: float = 120.0
    confirm_poll_interval: float = 1.0
    confirm_max_poll_interval: float = 8.0

    npt_minting_enabled: bool = True
    cross_chain_bridge_enabled: bool = True
    supported_chains: tuple = SUPPORTED_CHAINS

    event_history_size: int = 500
    subscriber_queue_size: int = 1000
