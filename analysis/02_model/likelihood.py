"""Observation likelihoods for overdispersed binomial counts.

A likelihood is a small plug-in exposing four things: a numpy log-density (used
for pointwise LOO), a random-sampling function (used for posterior predictive
checks), the expected value, and ``register()``, which adds the observed node
to the active PyMC model. The fitter only talks to this interface, so a
different count model can be swapped in by registering another implementation.

Beta-binomial parameterization (mean mu, dispersion phi):

    alpha = mu * phi
    beta  = (1 - mu) * phi
    y | T ~ BetaBinomial(T, alpha, beta)       E[y] = mu * T

phi has a hard lower bound of 2, so the implied Beta over the success
probability is never more dispersed than Beta(1, 1) at mu = 0.5. Keep the bound
at 2: changing it changes published estimates.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

import numpy as np
from numpy.typing import ArrayLike, NDArray
from scipy.special import betaln, gammaln

PHI_LOWER_BOUND = 2.0

# Keeps alpha and beta strictly positive when mu saturates in float64
_MU_EPS = 1e-12


class CountLikelihood(Protocol):
    """Interface every observation likelihood implements."""

    name: str

    def logp(self, y: ArrayLike, n: ArrayLike, mu: ArrayLike, phi: ArrayLike) -> NDArray: ...

    def random(
        self, n: ArrayLike, mu: ArrayLike, phi: ArrayLike, rng: np.random.Generator
    ) -> NDArray: ...

    def expectation(self, n: ArrayLike, mu: ArrayLike) -> NDArray: ...

    def register(self, name: str, mu, phi, n, observed, dims: str | None = None): ...


@dataclass(frozen=True)
class BetaBinomialLikelihood:
    """Beta-binomial with mean ``mu`` in (0, 1) and dispersion ``phi`` >= 2."""

    name: str = "beta_binomial"
    phi_lower: float = PHI_LOWER_BOUND

    @staticmethod
    def shape_params(mu: ArrayLike, phi: ArrayLike) -> tuple[NDArray, NDArray]:
        """Decompose (mu, phi) into the standard (alpha, beta) shape parameters."""
        mu_arr = np.clip(np.asarray(mu, dtype=np.float64), _MU_EPS, 1.0 - _MU_EPS)
        phi_arr = np.asarray(phi, dtype=np.float64)
        return mu_arr * phi_arr, (1.0 - mu_arr) * phi_arr

    def logp(self, y: ArrayLike, n: ArrayLike, mu: ArrayLike, phi: ArrayLike) -> NDArray:
        """Log-density log BetaBinomial(y; n, mu*phi, (1-mu)*phi), broadcasting."""
        y_arr = np.asarray(y, dtype=np.float64)
        n_arr = np.asarray(n, dtype=np.float64)
        alpha, beta = self.shape_params(mu, phi)
        log_choose = gammaln(n_arr + 1.0) - gammaln(y_arr + 1.0) - gammaln(n_arr - y_arr + 1.0)
        return log_choose + betaln(y_arr + alpha, n_arr - y_arr + beta) - betaln(alpha, beta)

    def random(
        self,
        n: ArrayLike,
        mu: ArrayLike,
        phi: ArrayLike,
        rng: np.random.Generator,
    ) -> NDArray:
        """Draw y ~ BetaBinomial(n, mu*phi, (1-mu)*phi) as beta then binomial."""
        alpha, beta = self.shape_params(mu, phi)
        n_arr = np.asarray(n, dtype=np.int64)
        # One success probability per trial count, even for scalar mu and phi
        shape = np.broadcast_shapes(n_arr.shape, alpha.shape, beta.shape)
        p = rng.beta(np.broadcast_to(alpha, shape), np.broadcast_to(beta, shape))
        return rng.binomial(np.broadcast_to(n_arr, shape), p)

    def expectation(self, n: ArrayLike, mu: ArrayLike) -> NDArray:
        """Posterior expected count E[y] = mu * n."""
        return np.asarray(mu, dtype=np.float64) * np.asarray(n, dtype=np.float64)

    def register(self, name: str, mu, phi, n, observed, dims: str | None = None):
        """Add the observed node to the active ``pm.Model`` context.

        ``mu`` and ``phi`` are PyTensor tensors from the model graph.
        """
        import pymc as pm

        return pm.BetaBinomial(
            name,
            alpha=mu * phi,
            beta=(1.0 - mu) * phi,
            n=n,
            observed=observed,
            dims=dims,
        )


LIKELIHOODS: dict[str, CountLikelihood] = {
    "beta_binomial": BetaBinomialLikelihood(),
}


def get_likelihood(name: str) -> CountLikelihood:
    """Look up a registered likelihood by name."""
    try:
        return LIKELIHOODS[name]
    except KeyError:
        msg = f"Unknown likelihood: {name!r}. Registered: {', '.join(sorted(LIKELIHOODS))}"
        raise ValueError(msg) from None
