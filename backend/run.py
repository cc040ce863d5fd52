from grants import create_app, socketio

app = create_app()

if __name__ == '__main__':
    # Use SocketIO server so admin views get live distribution updates in dev
    socketio.run(app, debug=True)
