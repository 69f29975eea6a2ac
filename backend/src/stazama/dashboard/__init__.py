"""Role-based dashboard core: data sync, actions, and view/modal controllers."""
