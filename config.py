# config.py
"""Settings: built-in defaults, then environment variables, then a YAML file.

Free-tier figures are a pricing snapshot, so they live here rather than in
the reporting code.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

import yaml

from models import IngressRule

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "freetier.yaml"
TAG_CREATEDBY_KEY = "CreatedBy"
TAG_CREATEDBY_VAL = "freetier-stack"
TAG_OWNER_KEY = "Owner"


@dataclass(frozen=True)
class FreeTierLimit:
    service: str
    allowances: tuple
    note: str = ""


DEFAULT_LIMITS = (
    FreeTierLimit("EC2 (t2.micro)", ("750 hours per month",), "~$8.47/month if running 24/7"),
    FreeTierLimit("RDS (db.t3.micro)", ("750 hours per month",), "~$12.41/month if running 24/7"),
    FreeTierLimit(
        "S3",
        ("5GB storage", "20,000 GET requests", "2,000 PUT requests"),
        "~$0.023/GB/month after free tier",
    ),
    FreeTierLimit("Data Transfer", ("15GB outbound per month",), "~$0.09/GB after free tier"),
)

DEFAULT_INGRESS = (
    IngressRule("tcp", 22, "0.0.0.0/0", "SSH"),
    IngressRule("tcp", 80, "0.0.0.0/0", "HTTP"),
    IngressRule("tcp", 443, "0.0.0.0/0", "HTTPS"),
    IngressRule("tcp", 3306, "0.0.0.0/0", "MySQL"),
)

# env var -> settings field
_ENV = {
    "AWS_REGION": "region",
    "FREETIER_REGION": "region",
    "FREETIER_NAME_PREFIX": "name_prefix",
    "FREETIER_KEY_NAME": "key_pair_base",
    "FREETIER_SECURITY_GROUP": "security_group_base",
    "FREETIER_DB_INSTANCE_ID": "database_base",
    "FREETIER_INSTANCE_TYPE": "instance_type",
    "FREETIER_AMI": "ami",
    "FREETIER_DB_CLASS": "db_instance_class",
    "FREETIER_DB_STORAGE": "db_allocated_storage",
    "FREETIER_DB_USERNAME": "db_username",
    "FREETIER_DB_PASSWORD": "db_password",
    "FREETIER_SUMMARY_FILE": "summary_file",
    "FREETIER_WARNING_HOURS": "warning_hours",
}


@dataclass
class Settings:
    region: str = "us-east-1"
    name_prefix: str = "laravel"
    key_pair_base: Optional[str] = None
    security_group_base: Optional[str] = None
    database_base: Optional[str] = None
    instance_type: str = "t2.micro"
    ami: str = "amazon-linux"
    security_group_description: str = "Laravel Security Group"
    ingress_rules: tuple = DEFAULT_INGRESS
    db_engine: str = "mysql"
    db_instance_class: str = "db.t3.micro"
    db_allocated_storage: int = 20
    db_username: str = "admin"
    db_password: Optional[str] = None
    db_name: str = "laravel"
    db_port: int = 3306
    role_policy_arn: str = "arn:aws:iam::aws:policy/AmazonS3FullAccess"
    iam_propagation_seconds: int = 10
    waiter_delay: int = 15
    waiter_max_attempts: int = 80
    summary_file: str = "laravel-aws-config.txt"
    monthly_free_hours: int = 750
    warning_hours: int = 700
    free_tier_limits: tuple = DEFAULT_LIMITS
    owner: str = field(default_factory=lambda: os.getenv("USER") or os.getenv("USERNAME") or "unknown")

    @property
    def waiter_config(self):
        return {"Delay": self.waiter_delay, "MaxAttempts": self.waiter_max_attempts}

    @classmethod
    def load(cls, path: Optional[str] = None, environ=None) -> "Settings":
        environ = os.environ if environ is None else environ
        settings = cls()
        settings._apply_env(environ)

        config_path = Path(path) if path else Path(DEFAULT_CONFIG_FILE)
        if path and not config_path.is_file():
            raise FileNotFoundError(f"config file not found: {config_path}")
        if config_path.is_file():
            with config_path.open() as fh:
                data = yaml.safe_load(fh) or {}
            if not isinstance(data, dict):
                raise ValueError(f"{config_path}: expected a mapping at the top level")
            settings._apply_mapping(data)
            logger.debug("loaded settings from %s", config_path)
        return settings

    def _apply_env(self, environ):
        for var, name in _ENV.items():
            if environ.get(var):
                self._set(name, environ[var])

    def _apply_mapping(self, data):
        known = {f.name for f in fields(self)}
        for key, value in data.items():
            if key not in known:
                raise ValueError(f"unknown setting: {key}")
            if key == "ingress_rules":
                value = tuple(IngressRule(**rule) for rule in value)
            elif key == "free_tier_limits":
                value = tuple(
                    FreeTierLimit(item["service"], tuple(item.get("allowances", ())), item.get("note", ""))
                    for item in value
                )
            self._set(key, value)

    def _set(self, name, value):
        current = getattr(self, name)
        if isinstance(current, bool):
            value = str(value).lower() in ("1", "true", "yes")
        elif isinstance(current, int) and not isinstance(value, int):
            value = int(value)
        setattr(self, name, value)
