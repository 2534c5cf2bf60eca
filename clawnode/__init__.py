"""clawnode: remote-controlled automation node for a gateway.

The node keeps one authenticated WebSocket session to a gateway and runs
device-control commands (screenshot, UI tree, tap, swipe, type, press,
launch) against pluggable capability providers.

Quickstart::

    from clawnode.agent import NodeAgent
    from clawnode.config import SettingsStore

    agent = NodeAgent(SettingsStore("~/.clawnode/config.json"))
    agent.registry.track(my_screen_provider)
    await agent.run()
"""

__version__ = "0.1.0"
