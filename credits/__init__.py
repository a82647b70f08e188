"""
Credits — consumable balance gating paid generation jobs.
"""
