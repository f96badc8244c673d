import uvicorn

from metaville.api.main import _boot_settings, app

if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=_boot_settings.port)
