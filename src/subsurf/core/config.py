"""
Configuration system with validation and environment awareness.
Based on Pydantic Settings for robust configuration management.

Two layers live here:
- ``SimulationConfig`` and its sections describe a whole run and can be
  loaded from YAML or overridden through ``SUBSURF_*`` environment variables;
- ``Options`` is the base of the per-evaluator and per-kernel option blocks.
  Their field aliases are the hierarchical option names users write
  (``"EOS basis"``, ``"update flux mode"``, ...), and ``parse_options`` turns
  any validation failure into a ``ConfigurationError`` at construction time.
"""
import logging
from pathlib import Path
from typing import Any, Dict, Literal, Mapping, Optional, Type, TypeVar, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from subsurf.core.constants import ATMOSPHERIC_PRESSURE, GRAVITY
from subsurf.core.exceptions import ConfigurationError, ErrorContext


class Options(BaseModel):
    """Base for option blocks read from a hierarchical parameter list"""

    model_config = ConfigDict(populate_by_name=True, extra="allow", frozen=True)

    def extra_option(self, name: str, default: Any = None) -> Any:
        """Look up an option that is not a declared field (e.g. ``visualize <key>``)."""
        extras = self.model_extra or {}
        return extras.get(name, default)


OptionsT = TypeVar("OptionsT", bound=Options)


def parse_options(model: Type[OptionsT], plist: Optional[Mapping[str, Any]], owner: str = "") -> OptionsT:
    """Validate a parameter list against an option model, failing fast."""
    try:
        return model.model_validate(dict(plist or {}))
    except ValidationError as exc:
        problems = []
        for err in exc.errors():
            loc = ".".join(str(part) for part in err.get("loc", ()))
            problems.append(f"'{loc}': {err.get('msg')}")
        raise ConfigurationError(
            f"Invalid options for {owner or model.__name__}: " + "; ".join(problems),
            context=ErrorContext(component=owner or model.__name__, operation="parse_options"),
        ) from exc


class LoggingConfig(BaseSettings):
    """Configuration for logging"""

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: str = Field(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    model_config = SettingsConfigDict(env_prefix="SUBSURF_LOGGING_", case_sensitive=False)


class MeshConfig(BaseSettings):
    """Configuration for the reference column mesh"""

    n_cells: int = Field(10, gt=0, description="Number of cells in the column")
    depth_m: float = Field(1.0, gt=0, description="Column depth in meters")
    area_m2: float = Field(1.0, gt=0, description="Column cross-section area")
    surface_elevation_m: float = Field(0.0, description="Elevation of the top face")
    include_surface: bool = Field(False, description="Build a surface mesh over the top face")

    model_config = SettingsConfigDict(env_prefix="SUBSURF_MESH_", case_sensitive=False)


class IntegratorConfig(BaseSettings):
    """Configuration for the BDF1 integrator and its step-size control"""

    # Nonlinear iteration
    max_iterations: int = Field(20, gt=0, description="Newton iterations before a step is declared diverged")
    max_preconditioner_lag: int = Field(0, ge=0, description="Iterations to reuse a preconditioner")
    max_divergence_factor: float = Field(1.e4, gt=1, description="Error growth that aborts the iteration")
    extrapolate_initial_guess: bool = Field(True)

    # Time stepping
    dt_initial: float = Field(1.0, gt=0, description="Initial step size (s)")
    dt_min: float = Field(1.e-6, gt=0, description="Smallest step size before giving up (s)")
    dt_max: float = Field(86400.0, gt=0, description="Largest step size (s)")
    dt_grow: float = Field(1.25, ge=1)
    dt_shrink: float = Field(0.5, gt=0, lt=1)
    easy_iterations: int = Field(5, gt=0, description="Grow dt when a step converged in fewer iterations")
    max_step_retries: int = Field(10, ge=0)

    model_config = SettingsConfigDict(env_prefix="SUBSURF_INTEGRATOR_", case_sensitive=False)

    @model_validator(mode="after")
    def validate_step_bounds(self):
        """Cross-field validation"""
        if not self.dt_min <= self.dt_initial <= self.dt_max:
            raise ValueError(
                f"dt_initial={self.dt_initial} must lie within [dt_min={self.dt_min}, dt_max={self.dt_max}]"
            )
        return self


class SimulationConfig(BaseSettings):
    """Main configuration for a Subsurf run"""

    project_name: str = "subsurf"
    t_start: float = 0.0
    t_end: float = 86400.0

    # Component configurations
    mesh: MeshConfig = Field(default_factory=MeshConfig)
    integrator: IntegratorConfig = Field(default_factory=IntegratorConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    # Global physical data
    atmospheric_pressure: float = Field(ATMOSPHERIC_PRESSURE, gt=0)
    gravity: float = Field(GRAVITY, ge=0, description="Magnitude of gravity, pointing down")

    # Evaluator option blocks keyed by field name
    state: Dict[str, Dict[str, Any]] = Field(default_factory=dict)

    # Process-kernel option blocks keyed by kernel name
    kernels: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    root_kernel: Optional[str] = Field(None, description="Kernel driven by the integrator")

    # Uniform initial values of primary fields
    initial_conditions: Dict[str, float] = Field(default_factory=dict)

    model_config = SettingsConfigDict(
        env_prefix="SUBSURF_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_config(self):
        """Cross-field validation"""
        if self.t_end < self.t_start:
            raise ValueError(f"t_end={self.t_end} precedes t_start={self.t_start}")
        if self.root_kernel is not None and self.root_kernel not in self.kernels:
            raise ValueError(f"root_kernel '{self.root_kernel}' is not among the configured kernels")
        return self

    @classmethod
    def from_yaml(cls, yaml_path: Union[str, Path]) -> "SimulationConfig":
        """Load configuration from YAML file"""
        yaml_path = Path(yaml_path)
        if not yaml_path.exists():
            raise FileNotFoundError(f"Config file not found: {yaml_path}")

        with open(yaml_path, encoding="utf-8") as f:
            yaml_config = yaml.safe_load(f) or {}

        try:
            return cls(**yaml_config)
        except ValidationError as exc:
            raise ConfigurationError(
                f"Invalid configuration in {yaml_path}: {exc}",
                context=ErrorContext(component="SimulationConfig", operation="from_yaml"),
            ) from exc

    def to_yaml(self, yaml_path: Union[str, Path]):
        """Save configuration to YAML file"""
        yaml_path = Path(yaml_path)
        yaml_path.parent.mkdir(parents=True, exist_ok=True)

        with open(yaml_path, "w", encoding="utf-8") as f:
            yaml.safe_dump(self.model_dump(), f, default_flow_style=False, sort_keys=False)

    def get_kernel_options(self, name: str) -> Dict[str, Any]:
        """Option block of a kernel, failing fast if it is missing"""
        if name not in self.kernels:
            raise ConfigurationError(
                f"No kernel named '{name}' in configuration",
                context=ErrorContext(component=name, operation="get_kernel_options"),
            )
        return self.kernels[name]


def configure_logging(config: Optional[LoggingConfig] = None) -> None:
    """Apply the logging section; the library never configures handlers on import."""
    config = config or LoggingConfig()
    logging.basicConfig(level=getattr(logging, config.log_level), format=config.log_format)
