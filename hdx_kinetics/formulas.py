"""
Kinetic uptake formulas: functional forms, free/fixed parameters and the
parameters that are estimated separately per condition.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from .errors import ConfigurationError


@dataclass(frozen=True)
class ParamSpec:
    """One parameter of a functional form."""

    name: str
    role: str  # "amplitude", "rate", "shape" or "offset"
    default: float = 1.0
    lower: float = -np.inf
    upper: float = np.inf


@dataclass(frozen=True)
class FormSpec:
    name: str
    func: Callable[..., np.ndarray]
    params: Tuple[ParamSpec, ...]

    @property
    def param_names(self) -> Tuple[str, ...]:
        return tuple(p.name for p in self.params)

    def param(self, name: str) -> ParamSpec:
        for p in self.params:
            if p.name == name:
                return p
        raise KeyError(name)


def _weibull(t, a, b, p, d):
    return a * (1.0 - np.exp(-b * np.power(t, p))) + d


def _exponential(t, a, b, d):
    return a * (1.0 - np.exp(-b * t)) + d


def _double_exponential(t, a1, b1, a2, b2, d):
    return a1 * (1.0 - np.exp(-b1 * t)) + a2 * (1.0 - np.exp(-b2 * t)) + d


FORMS: Dict[str, FormSpec] = {
    "weibull": FormSpec(
        name="weibull",
        func=_weibull,
        params=(
            ParamSpec("a", "amplitude", lower=0.0),
            ParamSpec("b", "rate", default=1e-3, lower=0.0),
            ParamSpec("p", "shape", default=1.0, lower=1e-3, upper=10.0),
            ParamSpec("d", "offset"),
        ),
    ),
    "exponential": FormSpec(
        name="exponential",
        func=_exponential,
        params=(
            ParamSpec("a", "amplitude", lower=0.0),
            ParamSpec("b", "rate", default=1e-3, lower=0.0),
            ParamSpec("d", "offset"),
        ),
    ),
    "double_exponential": FormSpec(
        name="double_exponential",
        func=_double_exponential,
        params=(
            ParamSpec("a1", "amplitude", lower=0.0),
            ParamSpec("b1", "rate", default=1e-2, lower=0.0),
            ParamSpec("a2", "amplitude", lower=0.0),
            ParamSpec("b2", "rate", default=1e-4, lower=0.0),
            ParamSpec("d", "offset"),
        ),
    ),
}


def condition_param(name: str, level: str) -> str:
    """Name of a condition-specific copy of parameter ``name``."""
    return f"{name}[{level}]"


@dataclass(frozen=True)
class KineticFormula:
    """
    A kinetic model specification.

    Parameters
    ----------
    form : str
        Key into ``FORMS``.
    free : tuple of str or None
        Estimated parameters. Defaults to every form parameter not in ``fixed``.
    fixed : mapping
        Parameter name → constant value.
    by_condition : tuple of str
        Free parameters estimated separately for each condition. Empty for a
        pooled (null) model.
    """

    form: str = "weibull"
    free: Optional[Tuple[str, ...]] = None
    fixed: Mapping[str, float] = field(default_factory=dict)
    by_condition: Tuple[str, ...] = ()

    def __post_init__(self):
        if self.form not in FORMS:
            raise ConfigurationError(
                f"Unknown kinetic form {self.form!r}; choose from {sorted(FORMS)}"
            )
        names = FORMS[self.form].param_names
        fixed = dict(self.fixed)
        unknown = [n for n in fixed if n not in names]
        if unknown:
            raise ConfigurationError(f"Fixed parameters {unknown} not in form {self.form!r}")

        if self.free is None:
            free = tuple(n for n in names if n not in fixed)
        else:
            free = tuple(n for n in names if n in set(self.free))
            unknown = [n for n in self.free if n not in names]
            if unknown:
                raise ConfigurationError(f"Free parameters {unknown} not in form {self.form!r}")
        overlap = [n for n in free if n in fixed]
        if overlap:
            raise ConfigurationError(f"Parameters {overlap} are both free and fixed")
        unset = [n for n in names if n not in free and n not in fixed]
        if unset:
            raise ConfigurationError(f"Parameters {unset} are neither free nor fixed")
        if not free:
            raise ConfigurationError("A formula needs at least one free parameter")

        by_condition = tuple(n for n in names if n in set(self.by_condition))
        stray = [n for n in self.by_condition if n not in free]
        if stray:
            raise ConfigurationError(f"Condition-specific parameters {stray} are not free")

        object.__setattr__(self, "free", free)
        object.__setattr__(self, "fixed", fixed)
        object.__setattr__(self, "by_condition", by_condition)

    @property
    def spec(self) -> FormSpec:
        return FORMS[self.form]

    def pooled(self) -> "KineticFormula":
        """The same formula with every parameter shared across conditions."""
        return replace(self, by_condition=())

    def condition_specific(self, params: Optional[Sequence[str]] = None) -> "KineticFormula":
        """The same formula with ``params`` (default: all free) estimated per condition."""
        return replace(self, by_condition=tuple(self.free if params is None else params))

    def parameter_names(self, levels: Sequence[str]) -> List[str]:
        out = []
        for name in self.free:
            if name in self.by_condition:
                out.extend(condition_param(name, lvl) for lvl in levels)
            else:
                out.append(name)
        return out

    def n_params(self, n_levels: int) -> int:
        return len(self.free) + len(self.by_condition) * (n_levels - 1)

    def bounds(self, levels: Sequence[str]) -> Tuple[np.ndarray, np.ndarray]:
        lower, upper = [], []
        for name in self.free:
            p = self.spec.param(name)
            k = len(levels) if name in self.by_condition else 1
            lower.extend([p.lower] * k)
            upper.extend([p.upper] * k)
        return np.array(lower, dtype=float), np.array(upper, dtype=float)

    def evaluate(
        self,
        theta: np.ndarray,
        levels: Sequence[str],
        times: np.ndarray,
        conditions: Optional[np.ndarray] = None,
    ) -> np.ndarray:
        """
        Evaluate the curve at ``times``.

        ``theta`` is ordered as ``parameter_names(levels)``. ``conditions``
        gives the condition label of each time point and is required when the
        formula has condition-specific parameters.
        """
        times = np.asarray(times, dtype=float)
        codes = None
        if self.by_condition:
            if conditions is None:
                raise ConfigurationError(
                    "Condition labels are required to evaluate a condition-specific formula"
                )
            lookup = {lvl: i for i, lvl in enumerate(levels)}
            try:
                codes = np.array([lookup[c] for c in np.asarray(conditions)], dtype=int)
            except KeyError as e:
                raise ConfigurationError(f"Unknown condition {e.args[0]!r}") from None

        values = {}
        pos = 0
        for name in self.free:
            if name in self.by_condition:
                values[name] = np.asarray(theta[pos:pos + len(levels)])[codes]
                pos += len(levels)
            else:
                values[name] = theta[pos]
                pos += 1
        values.update(self.fixed)
        return self.spec.func(times, **values)


def weibull_formula(
    by_condition: Sequence[str] = (),
    fixed: Optional[Mapping[str, float]] = None,
) -> KineticFormula:
    """Stretched-exponential uptake ``a * (1 - exp(-b * t**p)) + d``."""
    return KineticFormula(form="weibull", fixed=dict(fixed or {}), by_condition=tuple(by_condition))


def check_nested(null: KineticFormula, alt: KineticFormula) -> None:
    """Raise ConfigurationError unless ``null`` is nested in ``alt``."""
    if null.form != alt.form:
        raise ConfigurationError(
            f"Null form {null.form!r} and alternative form {alt.form!r} differ"
        )
    if dict(null.fixed) != dict(alt.fixed):
        raise ConfigurationError("Null and alternative formulas fix different parameters")
    if null.free != alt.free:
        raise ConfigurationError("Null and alternative formulas estimate different parameters")
    extra = [n for n in null.by_condition if n not in alt.by_condition]
    if extra:
        raise ConfigurationError(
            f"Null formula has condition-specific parameters {extra} "
            "that the alternative pools"
        )
    if len(alt.by_condition) == len(null.by_condition):
        raise ConfigurationError(
            "Alternative formula adds no condition-specific parameters"
        )


def default_start(
    formula: KineticFormula,
    responses: np.ndarray,
    start: Optional[Mapping[str, Optional[float]]] = None,
) -> Dict[str, float]:
    """
    Starting value for each free form parameter.

    Unset (None or missing) entries fall back to: observed minimum for
    offsets, observed range split across amplitudes, the form default for
    rates and shapes. Condition-specific entries (``"b[WT]"``) are passed
    through untouched.
    """
    start = dict(start or {})
    valid = set(formula.free)
    for name in start:
        base = name.split("[", 1)[0]
        if base not in valid:
            raise ConfigurationError(
                f"Starting value given for {name!r}, which is not a free parameter"
            )

    responses = np.asarray(responses, dtype=float)
    lo, hi = float(np.min(responses)), float(np.max(responses))
    amplitudes = [p for p in formula.spec.params if p.role == "amplitude" and p.name in valid]
    n_amp = max(len(amplitudes), 1)

    out = {}
    for name in formula.free:
        value = start.get(name)
        if value is None:
            p = formula.spec.param(name)
            if p.role == "offset":
                value = lo
            elif p.role == "amplitude":
                value = (hi - lo) / n_amp
            else:
                value = p.default
        out[name] = float(value)
    for name, value in start.items():
        if "[" in name and value is not None:
            out[name] = float(value)
    return out
