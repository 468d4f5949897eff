"""Card field extraction.

  image       : photo conditioning (orientation, size, sharpness, contrast)
  client      : schema-constrained Gemini call with a hard timeout
  normalizer  : name reassembly and national ID canonicalization
"""
