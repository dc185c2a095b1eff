"""Client side: collaborators, local group store and protocol coordinators."""
