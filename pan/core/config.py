# pan/core/config.py
from __future__ import annotations
import os
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Dict, Any, List
import yaml

log = logging.getLogger(__name__)


@dataclass
class Settings:
    # HTTP API
    allowed_origins: List[str]  # CORS allow-list
    # Signing context
    signer_origin: str
    signer_allowed_origins: List[str]  # callers the signing context will answer
    signer_timeout_ms: int
    # Cookie/session
    session_cookie_name: str
    dev_allow_insecure_cookie: bool
    session_ttl: int
    # DB
    db_path: str
    # Nonces
    nonce_ttl: int
    nonce_bytes: int
    # Interaction proof policy
    proof_max_age_ms: int
    clock_skew_ms: int
    min_trajectory_points: int
    max_velocity: float
    max_trajectory_gap_ms: int
    min_nonce_length: int
    # Recorder buffers
    max_trajectory_points: int
    max_interactions: int
    # Logging
    log_level: str
    # Informational
    cfg_file_used: Optional[str] = None

    @property
    def https_only(self) -> bool:
        return not self.dev_allow_insecure_cookie

    def proof_policy(self):
        """The one policy both the signer and the server enforce."""
        from pan.services.proof_validator import ProofPolicy
        return ProofPolicy(
            max_age_ms=self.proof_max_age_ms,
            clock_skew_ms=self.clock_skew_ms,
            min_trajectory_points=self.min_trajectory_points,
            max_velocity=self.max_velocity,
            max_trajectory_gap_ms=self.max_trajectory_gap_ms,
            min_nonce_length=self.min_nonce_length,
        )


_DEV_ORIGINS = ["http://localhost:3000", "http://127.0.0.1:3000"]

_DEFAULTS: Dict[str, Any] = {
    "server": {
        "allowed_origins": list(_DEV_ORIGINS),
    },
    "signer": {
        "origin": "http://localhost:3001",
        "allowed_origins": list(_DEV_ORIGINS),
        "timeout_ms": 10000,
    },
    "db": {"path": "/tmp/pan.db"},
    "session": {
        "cookie_name": "session_id",
        "dev_allow_insecure_cookie": True,
        "ttl": 86400,
    },
    "nonce": {"ttl": 300, "bytes": 32},
    "proof": {
        "max_age_ms": 5000,
        "clock_skew_ms": 2000,
        "min_trajectory_points": 3,
        "max_velocity": 10,
        "max_trajectory_gap_ms": 2000,
        "min_nonce_length": 16,
    },
    "recorder": {"max_trajectory_points": 100, "max_interactions": 20},
    "logging": {"level": "INFO"},
}

_SEARCH_ORDER = (
    "pan.yaml",
    "pan.yml",
    "pan.dev.yaml",
)

def _merge(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(a)
    for k, v in (b or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge(out[k], v)
        else:
            out[k] = v
    return out

def _resolve_path(s: str, base_dir: Path) -> Optional[Path]:
    """
    Try multiple resolution strategies for a relative path:
    - as given relative to CWD
    - relative to the repo root
    - relative to the parent of the repo root
    Return first existing path; else None.
    """
    p = Path(s)
    if p.is_absolute():
        return p if p.exists() else None
    candidates = [
        Path.cwd() / p,
        base_dir / p,
        base_dir.parent / p,
    ]
    for c in candidates:
        if c.exists():
            return c
    return None

def _substitute_env_vars(obj: Any) -> Any:
    """Replace "${VAR}" strings with the environment value when VAR is set."""
    if isinstance(obj, dict):
        return {k: _substitute_env_vars(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_substitute_env_vars(item) for item in obj]
    if isinstance(obj, str) and obj.startswith("${") and obj.endswith("}"):
        var_name = obj[2:-1]
        env_value = os.getenv(var_name)
        if env_value:
            return env_value
        log.warning("Environment variable %s not set, keeping placeholder", var_name)
    return obj

def _origins(value: Any) -> List[str]:
    # env substitution yields a comma-separated string
    if isinstance(value, str):
        return [o.strip() for o in value.split(",") if o.strip()]
    return [str(o) for o in (value or [])]

def load_settings(path: Optional[str] = None) -> Settings:
    """
    Load YAML settings with sensible overrides:

    Priority:
      1) explicit `path` arg (absolute or relative)
      2) env PAN_CONFIG (absolute or relative; robustly resolved)
      3) search order in project root: pan.yaml|yml|pan.dev.yaml
    """
    base_dir = Path(__file__).resolve().parent.parent.parent  # project root
    cfg_file_used: Optional[Path] = None

    if path:
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = _resolve_path(path, base_dir) or candidate
        if not candidate.exists():
            raise FileNotFoundError(f"Config file not found: {candidate}")
        cfg_file_used = candidate
    else:
        env_cfg = os.getenv("PAN_CONFIG")
        if env_cfg:
            candidate = _resolve_path(env_cfg, base_dir)
            if not candidate:
                tried = [
                    str(Path.cwd() / env_cfg),
                    str(base_dir / env_cfg),
                    str(base_dir.parent / env_cfg),
                ]
                raise FileNotFoundError("PAN_CONFIG not found. Tried: " + ", ".join(tried))
            cfg_file_used = candidate
        else:
            for name in _SEARCH_ORDER:
                p = base_dir / name
                if p.exists():
                    cfg_file_used = p
                    break

    data: Dict[str, Any] = {}
    if cfg_file_used:
        with open(cfg_file_used, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        data = _substitute_env_vars(data)
        log.info("Loaded config from: %s", str(cfg_file_used))

    cfg = _merge(_DEFAULTS, data)
    server = cfg.get("server") or {}
    signer = cfg.get("signer") or {}
    session = cfg.get("session") or {}
    nonce = cfg.get("nonce") or {}
    proof = cfg.get("proof") or {}
    recorder = cfg.get("recorder") or {}

    # Normalize db path; relative paths are anchored at the project root
    db_path = (cfg.get("db") or {}).get("path") or "/tmp/pan.db"
    if db_path != ":memory:":
        dbp = Path(db_path)
        if not dbp.is_absolute():
            dbp = base_dir / dbp
        db_path = str(dbp)

    return Settings(
        allowed_origins=_origins(server.get("allowed_origins")),
        signer_origin=str(signer.get("origin")),
        signer_allowed_origins=_origins(signer.get("allowed_origins")),
        signer_timeout_ms=int(signer.get("timeout_ms", 10000)),
        session_cookie_name=session.get("cookie_name") or "session_id",
        dev_allow_insecure_cookie=bool(session.get("dev_allow_insecure_cookie", False)),
        session_ttl=int(session.get("ttl", 86400)),
        db_path=db_path,
        nonce_ttl=int(nonce.get("ttl", 300)),
        nonce_bytes=int(nonce.get("bytes", 32)),
        proof_max_age_ms=int(proof.get("max_age_ms", 5000)),
        clock_skew_ms=int(proof.get("clock_skew_ms", 2000)),
        min_trajectory_points=int(proof.get("min_trajectory_points", 3)),
        max_velocity=float(proof.get("max_velocity", 10)),
        max_trajectory_gap_ms=int(proof.get("max_trajectory_gap_ms", 2000)),
        min_nonce_length=int(proof.get("min_nonce_length", 16)),
        max_trajectory_points=int(recorder.get("max_trajectory_points", 100)),
        max_interactions=int(recorder.get("max_interactions", 20)),
        log_level=str((cfg.get("logging") or {}).get("level") or "INFO").upper(),
        cfg_file_used=str(cfg_file_used) if cfg_file_used else None,
    )
