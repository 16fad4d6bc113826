"""Application configuration"""
from pydantic_settings import BaseSettings
from typing import List, Literal


class Settings(BaseSettings):
    panel_port: int = 8000
    panel_host: str = "0.0.0.0"
    docs_enabled: bool = True
    log_level: str = "INFO"
    
    db_type: Literal["sqlite"] = "sqlite"
    db_path: str = "./data/tunnelcore.db"
    
    data_dir: str = "./data"
    cert_dir: str = "./certs"
    log_dir: str = "./data/logs"
    
    ssh_binary: str = ""
    frpc_binary: str = ""
    frps_binary: str = ""
    gost_binary: str = ""
    chisel_binary: str = ""
    
    frp_version: str = "0.58.1"
    gost_version: str = "3.0.0-rc10"
    chisel_version: str = "1.9.1"
    
    port_range_min: int = 10000
    port_range_max: int = 65000
    reserved_ports: List[int] = [80, 443]
    port_allocation_attempts: int = 100
    
    reconnect_max_retries: int = 10
    reconnect_interval: float = 30.0
    stop_timeout: float = 5.0
    
    monitor_interval_minutes: int = 30
    monitor_retention_hours: int = 24
    probe_count: int = 5
    probe_mode: Literal["simulated", "tcp", "http"] = "simulated"
    autopilot_enabled: bool = True
    
    trusttunnel_port: int = 8443
    openvpn_ports: List[int] = [110, 510]
    wireguard_ports: List[int] = [1414, 53133]
    camouflage_profile: Literal["ai-research", "cloud-company"] = "ai-research"
    camouflage_sni: str = "google.com"
    
    restore_tunnels_on_startup: bool = True
    
    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()
