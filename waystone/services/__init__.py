# Engine services
