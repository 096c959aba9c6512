"""Threshold evaluators, one per application type."""

from infra_inspector.evaluators.base import BaseEvaluator, EvaluationResult
from infra_inspector.evaluators.host import HostEvaluator
from infra_inspector.evaluators.mysql import MySQLEvaluator
from infra_inspector.evaluators.nginx import NginxEvaluator
from infra_inspector.evaluators.redis import RedisEvaluator
from infra_inspector.evaluators.tomcat import TomcatEvaluator

__all__ = [
    "BaseEvaluator",
    "EvaluationResult",
    "HostEvaluator",
    "MySQLEvaluator",
    "NginxEvaluator",
    "RedisEvaluator",
    "TomcatEvaluator",
]
