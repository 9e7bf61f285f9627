"""
Exchange Connectors Package

One subpackage per venue. Each has:
- __init__.py: Adapter class implementing ExchangeInterface plus its capability groups
- api_client.py: REST API logic
- ws_client.py: WebSocket streaming logic

Adapters are registered in core.exchange_manager's name -> class table.
"""
