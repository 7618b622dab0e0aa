"""
Document Processing Building Blocks
════════════════════════════════════

External-service clients and pure document transforms used by the processors.

Modules
───────
  textract.py        AWS Textract sync/async analysis, block parsing, polling,
                     PyMuPDF text-layer fallback
  embeddings.py      OpenAI embeddings with sentence chunking and mean aggregation
  classification.py  OpenAI chat classification + entity extraction, tolerant parsing
  pdf_tools.py       PyMuPDF split / merge / watermark / compress / render / metadata

Every client is constructed with its credentials and accepts an injected SDK
client, so tests never touch the network.
"""
