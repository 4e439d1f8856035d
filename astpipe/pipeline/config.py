"""
Pipeline Configuration
======================

Knobs for one pipeline run. Values are validated when the config is
built, so a bad value fails loudly before any tree is touched.
"""

from dataclasses import dataclass, fields
from typing import Any, Mapping, Optional, Tuple

# Declared pass order; the driver runs enabled passes in this order
PASS_ORDER: Tuple[str, ...] = (
    'inline',
    'constant_fold',
    'dead_code',
    'hoist',
    'unroll',
    'global_rebind',
    'algebraic_simplify',
)


@dataclass(frozen=True)
class PipelineConfig:
    """
    Usage:
        >>> config = PipelineConfig(max_iterations=5, unroll_factor=2)
        >>> config.is_enabled('unroll')
        True
        >>> PipelineConfig.from_mapping({'enabled_passes': ['constant_fold']}).enabled_passes
        ('constant_fold',)
    """
    max_iterations: int = 10
    enabled_passes: Tuple[str, ...] = PASS_ORDER
    unroll_factor: int = 4
    inline_size_budget: int = 40
    full_unroll_limit: int = 16
    max_unrolled_nodes: int = 2000
    time_budget: Optional[float] = None

    def __post_init__(self):
        object.__setattr__(self, 'enabled_passes', tuple(self.enabled_passes))
        for name in ('max_iterations', 'unroll_factor', 'inline_size_budget',
                     'max_unrolled_nodes'):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                raise ValueError(f'{name} must be a positive integer, got {value!r}')
        if not isinstance(self.full_unroll_limit, int) or isinstance(self.full_unroll_limit, bool) \
                or self.full_unroll_limit < 0:
            raise ValueError(
                f'full_unroll_limit must be a non-negative integer, got {self.full_unroll_limit!r}'
            )
        if self.unroll_factor < 2:
            raise ValueError(f'unroll_factor must be at least 2, got {self.unroll_factor}')
        if self.time_budget is not None and not (
            isinstance(self.time_budget, (int, float)) and self.time_budget > 0
        ):
            raise ValueError(f'time_budget must be a positive number, got {self.time_budget!r}')
        unknown = [p for p in self.enabled_passes if p not in PASS_ORDER]
        if unknown:
            raise ValueError(f'unknown pass name(s): {", ".join(unknown)}')
        if len(set(self.enabled_passes)) != len(self.enabled_passes):
            raise ValueError('enabled_passes lists a pass more than once')

    def is_enabled(self, pass_name: str) -> bool:
        return pass_name in self.enabled_passes

    def ordered_passes(self) -> Tuple[str, ...]:
        """Enabled passes in declared order, whatever order they were given in."""
        return tuple(p for p in PASS_ORDER if p in self.enabled_passes)

    def without(self, *pass_names: str) -> 'PipelineConfig':
        unknown = [p for p in pass_names if p not in PASS_ORDER]
        if unknown:
            raise ValueError(f'unknown pass name(s): {", ".join(unknown)}')
        return self.replace(enabled_passes=tuple(
            p for p in self.enabled_passes if p not in pass_names
        ))

    def replace(self, **changes) -> 'PipelineConfig':
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        values.update(changes)
        return PipelineConfig(**values)

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> 'PipelineConfig':
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(mapping) - known)
        if unknown:
            raise ValueError(f'unknown config key(s): {", ".join(unknown)}')
        return cls(**dict(mapping))
