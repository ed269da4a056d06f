"""Kernel source management, configuration and building."""