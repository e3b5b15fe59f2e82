"""Rollout Manager: applies manifests, updates images and verifies cluster rollouts."""
