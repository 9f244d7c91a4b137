"""Managers - loader handling and the modpack install/update engine."""
