# blackwell_envboot_config.py
# Example config for an RTX 50-series (sm_120) box:
#   envboot myenv --arch sm_120 --config blackwell_envboot_config.py
from __future__ import annotations

# nvcc in the pinned toolkit has no sm_120 target yet; build Hopper + PTX
ARCH_FALLBACKS = {
    "12.0": "9.0+PTX",
}

PINS = {
    "torch": "==2.7.0",
    "numpy": "<2",
    "transformers": "==4.44.2",
}

SOURCE_PACKAGES = [
    "flash-attn",
]
