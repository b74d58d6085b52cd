"""
Webhook protocol layer: platform resolution, signatures, handshakes, the
security gate, envelope extraction, normalisation and the ingestion pipeline.
"""
