from lime_orders import create_app

app = create_app()
