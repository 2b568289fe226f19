# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

__version__ = "0.1.0"
