from app.chms import create_app

app = create_app()
