from app.mycolab import create_app

app = create_app()
