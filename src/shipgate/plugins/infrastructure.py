"""InfrastructureProvider ABC for deployment targets.

The provider is the only component that touches real infrastructure. The
pipeline drives it through a RetryingCaller: implementations raise
TransientInfrastructureError for failures that are safe to retry and
InfrastructureError for everything else.
"""

from __future__ import annotations

from abc import abstractmethod

from shipgate.plugin_metadata import HealthStatus, PluginMetadata


class InfrastructureProvider(PluginMetadata):
    """Abstract base class for deployment target providers.

    Abstract Methods:
        deploy: Roll a revision out to an environment.
        shift_traffic: Route a percentage of production traffic to a deployment.
        promote: Make a deployment the production baseline.
        rollback: Restore the previous production baseline.
        get_health: Report the health of a deployment's workload.
    """

    @abstractmethod
    async def deploy(self, deployment_id: str, environment: str, revision: str) -> None:
        """Deploy a revision to an environment.

        Raises:
            InfrastructureError: If the deployment fails.
        """
        ...

    @abstractmethod
    async def shift_traffic(self, deployment_id: str, percent: int) -> None:
        """Route percent of production traffic to the deployment.

        Args:
            deployment_id: Deployment receiving traffic.
            percent: Target percentage, 0 to 100.

        Raises:
            InfrastructureError: If the shift fails.
        """
        ...

    @abstractmethod
    async def promote(self, deployment_id: str) -> None:
        """Make the deployment the production baseline."""
        ...

    @abstractmethod
    async def rollback(self, deployment_id: str) -> None:
        """Restore the previous production baseline.

        Must be safe to call more than once for the same deployment.
        """
        ...

    @abstractmethod
    async def get_health(self, deployment_id: str) -> HealthStatus:
        """Return the health of the deployment's workload."""
        ...


__all__ = ["InfrastructureProvider"]
