import logging

import torch

logger = logging.getLogger(__name__)


class StabilityGuard:
    """
    Replaces non-finite entries before they flow further through a graph.

    An infinity becomes a large finite sentinel with the same sign, capped at
    1e-4 of the largest value the tensor's dtype can hold. A NaN
    becomes a small random value drawn uniformly from [nan_low, nan_high].
    The NaN substitution is a weak mitigation: it keeps training running
    but does not reliably bring the model back to where it was.
    """
    def __init__(self, sentinel=1e6, nan_low=-1e-3, nan_high=1e-3, seed=None):
        assert sentinel > 0, "Sentinel must be positive"
        assert nan_low <= nan_high, "NaN range is empty"
        self.sentinel = sentinel
        self.nan_low = nan_low
        self.nan_high = nan_high
        self.generator = torch.Generator()
        if seed is not None:
            self.generator.manual_seed(seed)
        else:
            self.generator.seed()
        self.inf_substitutions = 0
        self.nan_substitutions = 0

    def sentinel_for(self, dtype):
        return min(self.sentinel, torch.finfo(dtype).max / 1e4)

    def sanitize(self, value, where="value"):
        """
        Return value unchanged when every entry is finite, otherwise a
        copy with infinities and NaNs substituted.
        :param where: A short description used in the warning log.
        """
        if not value.is_floating_point() or bool(torch.isfinite(value).all()):
            return value

        value = value.clone()
        positive = torch.isposinf(value)
        negative = torch.isneginf(value)
        inf_count = int(positive.sum()) + int(negative.sum())
        if inf_count:
            sentinel = self.sentinel_for(value.dtype)
            value[positive] = sentinel
            value[negative] = -sentinel
            self.inf_substitutions += inf_count
            logger.warning("Replaced %d infinite entries in %s with +/-%g", inf_count, where, sentinel)

        nan = torch.isnan(value)
        nan_count = int(nan.sum())
        if nan_count:
            noise = torch.empty(nan_count, dtype=torch.float64)
            noise.uniform_(self.nan_low, self.nan_high, generator=self.generator)
            value[nan] = noise.to(value.dtype)
            self.nan_substitutions += nan_count
            logger.warning("Replaced %d NaN entries in %s with random values in [%g, %g]",
                           nan_count, where, self.nan_low, self.nan_high)
        return value

    def reset_counts(self):
        self.inf_substitutions = 0
        self.nan_substitutions = 0
