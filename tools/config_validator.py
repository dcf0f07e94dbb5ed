"""
Configuration Validation Module

Validates app.yaml and policy.yaml against Pydantic schemas.
Ensures config files are correct before a reconciliation cycle runs.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, ValidationError

logger = logging.getLogger(__name__)


# ===== App Schema =====
class AppSection(BaseModel):
    """Application identity and run mode"""
    name: str = Field(default="treasury-reconciler", min_length=1)
    mode: str = Field(default="DRY_RUN", pattern="^(DRY_RUN|LIVE)$", description="DRY_RUN logs mutations without writing")


class LoggingSection(BaseModel):
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    file: str = Field(default="logs/treasury.log", min_length=1)


class LedgerSection(BaseModel):
    store: str = Field(default="sqlite", pattern="^(memory|json|sqlite)$", description="Ledger backend")
    path: Optional[str] = Field(default=None, description="Backend file path")


class AuditSection(BaseModel):
    file: str = Field(default="logs/audit.jsonl", min_length=1)


class MonitoringSection(BaseModel):
    metrics_enabled: bool = Field(default=False, description="Expose Prometheus metrics")
    metrics_port: int = Field(default=9108, gt=0, lt=65536)


class VenueSection(BaseModel):
    """One venue adapter"""
    model_config = ConfigDict(extra="forbid")

    enabled: bool = Field(default=True)
    strategy_id: str = Field(min_length=1, description="Ledger strategy the venue reconciles into")
    account_env: Optional[str] = Field(default=None, description="Env var holding the wallet/account address")
    account: Optional[str] = Field(default=None, description="Literal wallet/account address")


class VenuesSection(BaseModel):
    fetch_timeout_seconds: float = Field(default=20.0, gt=0, description="Budget per venue fetch")
    http_timeout_seconds: float = Field(default=10.0, gt=0, description="Per-request HTTP timeout")
    max_retries: int = Field(default=3, ge=0, description="HTTP retries on 429/5xx/network errors")
    polymarket: Optional[VenueSection] = None
    hyperliquid: Optional[VenueSection] = None


class AppSchema(BaseModel):
    """Complete app configuration schema"""
    app: AppSection = Field(default_factory=AppSection)
    logging: LoggingSection = Field(default_factory=LoggingSection)
    ledger: LedgerSection = Field(default_factory=LedgerSection)
    audit: AuditSection = Field(default_factory=AuditSection)
    monitoring: MonitoringSection = Field(default_factory=MonitoringSection)
    venues: VenuesSection = Field(default_factory=VenuesSection)


# ===== Policy Schema =====
class ReconcileSchema(BaseModel):
    """Reconciliation tunables"""
    cost_basis_tolerance_usd: float = Field(default=0.5, ge=0, description="Absolute cost basis tolerance (USD)")
    cost_basis_tolerance_pct: float = Field(default=0.0, ge=0, le=1, description="Relative cost basis tolerance")
    terminal_price: float = Field(default=0.01, ge=0, le=1, description="Price at or below which a zero-value position is settled")
    keep_policy: str = Field(default="oldest", pattern="^(oldest|richest_metadata)$", description="Row kept when merging fragments")


class HedgeSchema(BaseModel):
    """Hedge decision parameters"""
    target_ratio: float = Field(default=0.5, ge=0, le=1, description="Fraction of exposure to short")
    rebalance_threshold: float = Field(default=0.15, gt=0, le=1, description="Dead-band around target")
    min_exposure_usd: float = Field(default=100.0, ge=0, description="Ignore smaller exposures")
    whitelist: List[str] = Field(default_factory=list, description="Hedge only these assets when non-empty")
    max_short_usd: Optional[float] = Field(default=None, ge=0, description="Cap on total short per asset")
    min_action_usd: float = Field(default=0.0, ge=0, description="Smaller adjustments are held IN_RANGE")

    @field_validator('whitelist')
    @classmethod
    def validate_whitelist(cls, v: List[str]) -> List[str]:
        """Symbols must be non-empty strings"""
        for symbol in v:
            if not str(symbol).strip():
                raise ValueError("whitelist entries must be non-empty symbols")
        return v


class ExposureSchema(BaseModel):
    ignore_symbols: Optional[List[str]] = Field(default=None, description="Symbols never counted (default: stablecoins)")
    exclude_strategies: Optional[List[str]] = Field(default=None, description="Ledger strategies not counted as exposure")


class MonitorSchema(BaseModel):
    """Position monitor parameters"""
    enabled: bool = Field(default=True)
    stop_loss_pct: float = Field(default=0.60, gt=0, le=1, description="Loss fraction of cost triggering STOP_LOSS")
    take_profit_pct: Optional[float] = Field(default=None, gt=0, description="Gain fraction triggering TAKE_PROFIT")
    liquidation_warning_pct: float = Field(default=0.20, gt=0, lt=1, description="Mark-to-liquidation distance triggering STOP_LOSS")
    strategy_caps: Dict[str, float] = Field(default_factory=dict, description="Max portfolio fraction per strategy")

    @field_validator('strategy_caps')
    @classmethod
    def validate_caps(cls, v: Dict[str, float]) -> Dict[str, float]:
        """Validate caps are fractions in (0, 1]"""
        for strategy, cap in v.items():
            if cap <= 0 or cap > 1:
                raise ValueError(f"Strategy {strategy} cap must be 0 < cap ≤ 1, got {cap}")
        return v


class PolicySchema(BaseModel):
    """Complete policy configuration schema"""
    reconcile: ReconcileSchema = Field(default_factory=ReconcileSchema)
    hedge: HedgeSchema = Field(default_factory=HedgeSchema)
    exposure: ExposureSchema = Field(default_factory=ExposureSchema)
    monitor: MonitorSchema = Field(default_factory=MonitorSchema)


# ===== Validation Functions =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return enriched message with line/column context for YAML errors."""

    message = f"Malformed YAML in {file_path}: {error}"
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return message

    line = getattr(mark, "line", None)
    column = getattr(mark, "column", None)
    if line is None or column is None:
        return message

    problem = getattr(error, "problem", str(error))
    try:
        raw_lines = file_path.read_text().splitlines()
    except OSError:
        return f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}"

    snippet = "\n".join(
        f"{'▶' if idx == line else ' '} {idx + 1:04d} | {raw_lines[idx]}"
        for idx in range(max(line - 2, 0), min(line + 3, len(raw_lines)))
    )
    return (
        f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}\n"
        f"Context:\n{snippet}"
    )


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, 'r') as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def _validate_file(config_dir: Path, filename: str, schema) -> List[str]:
    errors = []
    try:
        config = load_yaml_file(config_dir / filename)
        schema(**config)
        logger.info(f"✅ {filename} validation passed")
    except FileNotFoundError as e:
        errors.append(f"{filename}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{filename}: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error['loc'])
            errors.append(f"{filename}: {field}: {error['msg']}")
    except TypeError as e:
        errors.append(f"{filename}: top level must be a mapping - {e}")
    return errors


def validate_app(config_dir: Path) -> List[str]:
    """Validate app.yaml against schema."""
    return _validate_file(config_dir, "app.yaml", AppSchema)


def validate_policy(config_dir: Path) -> List[str]:
    """Validate policy.yaml against schema."""
    return _validate_file(config_dir, "policy.yaml", PolicySchema)


def validate_sanity_checks(config_dir: Path) -> List[str]:
    """
    Perform logical consistency checks across configuration files.

    Detects:
    - Hedge dead-bands that make a decision unreachable
    - LIVE mode on a non-persistent ledger

    Returns:
        List of sanity check error messages (empty if all pass)
    """
    errors = []
    app = AppSchema(**load_yaml_file(config_dir / "app.yaml"))
    policy = PolicySchema(**load_yaml_file(config_dir / "policy.yaml"))

    hedge = policy.hedge
    if hedge.target_ratio > 0 and hedge.rebalance_threshold >= hedge.target_ratio:
        errors.append(
            f"CONTRADICTION: hedge.rebalance_threshold ({hedge.rebalance_threshold}) >= target_ratio "
            f"({hedge.target_ratio}); an unhedged asset would never open a hedge."
        )
    if hedge.max_short_usd is not None and hedge.max_short_usd < hedge.min_action_usd:
        errors.append(
            f"CONTRADICTION: hedge.max_short_usd ({hedge.max_short_usd}) < min_action_usd "
            f"({hedge.min_action_usd}); no hedge could ever be opened."
        )

    if app.app.mode == "LIVE" and app.ledger.store == "memory":
        errors.append("UNSAFE: app.mode=LIVE with ledger.store=memory loses the ledger on exit.")

    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Sanity checks (logical consistency)

    Args:
        config_dir: Path to config directory (string or Path)

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir)

    all_errors = []
    all_errors.extend(validate_app(config_path))
    all_errors.extend(validate_policy(config_path))

    # Sanity checks (only if schema validation passed)
    if not all_errors:
        all_errors.extend(validate_sanity_checks(config_path))

    if not all_errors:
        logger.info("✅ All config files validated successfully")
    else:
        logger.error(f"❌ {len(all_errors)} validation error(s) found")

    return all_errors


def load_app_config(config_dir: str = "config") -> Dict[str, Any]:
    """Load app.yaml with schema defaults filled in."""
    raw = load_yaml_file(Path(config_dir) / "app.yaml")
    return AppSchema(**raw).model_dump()


def load_policy_config(config_dir: str = "config") -> Dict[str, Any]:
    """Load policy.yaml with schema defaults filled in."""
    raw = load_yaml_file(Path(config_dir) / "policy.yaml")
    return PolicySchema(**raw).model_dump()


if __name__ == "__main__":
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"

    errors = validate_all_configs(config_dir)

    if errors:
        print("\n❌ Configuration Validation Failed:\n")
        for error in errors:
            print(f"  • {error}")
        print()
        sys.exit(1)
    else:
        print("\n✅ All configuration files are valid!\n")
        sys.exit(0)
