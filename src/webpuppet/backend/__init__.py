"""Network clients: DevTools websocket and upload HTTP."""
