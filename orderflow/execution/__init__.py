"""Order execution: lifecycle rules, the per-job pipeline and settlement."""
