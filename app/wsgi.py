from app.pubwiki import create_app

app = create_app()
