"""Provisioners executing a Build's provisioning steps."""
