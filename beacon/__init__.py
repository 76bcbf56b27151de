"""beacon — continuously refreshed target discovery.

Turns a declarative discovery configuration into a live, periodically
refreshed set of target groups for a downstream consumer.

Quickstart::

    from beacon.component import DiscoveryComponent
    from beacon.config import DiscoveryConfig

    component = DiscoveryComponent(DiscoveryConfig.load("discovery.json"))
    await component.start()
    for group in component.export():
        print(group.source, [t.address for t in group.targets])
"""

__version__ = "0.1.0"
