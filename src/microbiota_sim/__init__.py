"""microbiota_sim: community metabolic model assembly and diet simulations."""

__version__ = "0.1.0"
