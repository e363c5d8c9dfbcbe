from .connect import ConnectTunnel, TunnelState, parse_connect_target

__all__ = ["ConnectTunnel", "TunnelState", "parse_connect_target"]
