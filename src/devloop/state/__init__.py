from devloop.state.run_store import RunMutation, RunStore

__all__ = ["RunMutation", "RunStore"]
