"""
Mixed-model families for cell-level differential state testing.

* :class:`DreamMethod`       -- precision-weighted LMM on logcounts
* :class:`VstMethod`         -- LMM on Pearson-residual expression
* :class:`PoissonGLMMMethod` -- Poisson GLMM on counts
* :class:`NegBinGLMMMethod`  -- negative binomial GLMM on counts

All families fit ``expression ~ 1 + group_id + (1 | sample_id)`` by maximum
likelihood. Use :func:`get_method` to build one from its name.
"""

from __future__ import annotations

from ._base import DDFMethod, MixedMethodName, _BaseMixedMethod
from .glmm import NegBinGLMMMethod, PoissonGLMMMethod
from .lmm import DreamMethod, VstMethod, satterthwaite_df, voom_weights

__all__ = [
    "MixedMethodName",
    "DDFMethod",
    "DreamMethod",
    "VstMethod",
    "PoissonGLMMMethod",
    "NegBinGLMMMethod",
    "satterthwaite_df",
    "voom_weights",
    "get_method",
]


def get_method(name: str | MixedMethodName, ddf: str | DDFMethod = "satterthwaite") -> _BaseMixedMethod:
    """Instantiate a mixed-model family by name ("dream", "vst", "poisson", "nbinom")."""
    name = name if isinstance(name, MixedMethodName) else MixedMethodName(name)
    # GLMM families use Wald z and ignore ddf, but a bad value is still an error
    ddf = ddf if isinstance(ddf, DDFMethod) else DDFMethod(ddf)
    if name is MixedMethodName.DREAM:
        return DreamMethod(ddf=ddf)
    if name is MixedMethodName.VST:
        return VstMethod(ddf=ddf)
    if name is MixedMethodName.POISSON:
        return PoissonGLMMMethod()
    return NegBinGLMMMethod()
