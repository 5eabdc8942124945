# Copyright (c) 2025.
# This file is part of GPMP-JIT, released under the MIT License.
