from delivery_engine.api.factory import create_app
from delivery_engine.container import socket_service

app = create_app(socket_service)
