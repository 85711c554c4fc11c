#!/usr/bin/env python3
"""
STACKFORGE SETTINGS
-------------------
Tunables for one engine run. The CLI overrides them from flags.
"""

from dataclasses import dataclass


@dataclass
class EngineSettings:
    parallelism: int = 10           # Worker pool size for materialization + bootstrap
    connect_attempts: int = 5       # Ceiling for remote-session connection attempts
    backoff_base: float = 1.0       # Seconds before the 2nd attempt, doubled each time
    backoff_max: float = 30.0       # Cap for a single backoff sleep

    def __post_init__(self):
        if self.parallelism < 1:
            raise ValueError(f"parallelism must be >= 1, got {self.parallelism}")
        if self.connect_attempts < 1:
            raise ValueError(f"connect_attempts must be >= 1, got {self.connect_attempts}")
