"""Built-in shell provisioner.

This module handles:
- Job manifests for shell provisioning steps
- Starting and polling steps from the Build controller
- Observing Job outcomes and reporting them onto the Build
- The in-Job runner that executes the script over SSH
"""
