# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Allow ``python -m interop_rpc``."""

from interop_rpc.cli import main

main()
