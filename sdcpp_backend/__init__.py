"""SD.cpp Backend - stable-diffusion.cpp as an image/video generation backend.

Main Components:
    - orchestration: Architecture classification, hardware probing, memory-fit policy
    - resolution: Local model index and component resolution with auto-download
    - compilation: Request -> job descriptor
    - execution: Engine process supervision and GGUF conversion
    - provisioning: Prebuilt engine install and updates
    - api: Read-only status API

Quick Start:
    from sdcpp_backend.backend import SDcppBackend
    from sdcpp_backend.request import GenerationRequest

    backend = SDcppBackend()
    backend.init()
    result = asyncio.run(backend.generate(GenerationRequest("Models/sd15.safetensors", prompt="a cat")))
"""
__version__ = "1.0.0"
