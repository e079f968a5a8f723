"""In-memory doubles for integration-style reconciler tests.

Provides mock implementations of the three outbound seams of the operator
so a full reconciliation can run without Fivetran, Vault or a cluster.

Usage:
    from fivetran_mock import MockFivetranClient, MockResourceStore, MockSecretStore

    store = MockResourceStore()
    store.add(make_resource())
    reconciler = Reconciler(store, MockFivetranClient(), MockSecretStore({...}))
    outcome = reconciler.reconcile("fivetran-operator/postgres-prod")
"""

from .provider import MockFivetranClient, not_found, schema_not_found
from .resources import DEFAULT_NAMESPACE, connector_spec, make_resource, schema_spec
from .stores import MockResourceStore, MockSecretStore

__all__ = [
    "DEFAULT_NAMESPACE",
    "MockFivetranClient",
    "MockResourceStore",
    "MockSecretStore",
    "connector_spec",
    "make_resource",
    "not_found",
    "schema_not_found",
    "schema_spec",
]
