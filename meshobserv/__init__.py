"""meshobserv - Meshtastic MQTT node directory"""
