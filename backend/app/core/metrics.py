"""
Challenge Deployer - Prometheus metrics
"""

from prometheus_client import Counter

DEPLOYMENTS = Counter(
    "challenge_deployments_total",
    "Deployment requests by outcome",
    ["outcome"],
)

TEARDOWNS = Counter(
    "challenge_teardowns_total",
    "Deployment teardowns by outcome",
    ["outcome"],
)

CONFIG_CACHE_LOOKUPS = Counter(
    "challenge_config_cache_lookups_total",
    "Challenge configuration cache lookups",
    ["result"],
)
