from vmplane.main import serve

if __name__ == "__main__":
    # Host, port and log level come from the environment (.env)
    serve()
