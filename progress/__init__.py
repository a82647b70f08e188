"""
Progress — live job status fan-out to brand and job rooms.
"""
