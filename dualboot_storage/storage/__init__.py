"""Block device discovery, partition planning and provisioning."""
