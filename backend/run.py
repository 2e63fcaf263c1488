from bargain import create_app, socketio
from bargain.services.play.sweeper import schedule_expiry_sweep

app = create_app()

if __name__ == '__main__':
    # Use SocketIO server to enable websockets in dev
    schedule_expiry_sweep(app)
    socketio.run(app, debug=True)
