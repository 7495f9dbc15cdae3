"""
ProxyBase MCP protocol engine: codec, dispatcher, tool registry and stdio server.
"""
