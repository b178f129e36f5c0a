from phaseguard.state.store import ProjectPaths, StateStore, StateStoreError

__all__ = ["ProjectPaths", "StateStore", "StateStoreError"]
